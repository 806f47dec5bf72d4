"""
HTTP API Tests

Drives ruleset_engine.api.server through FastAPI's TestClient (httpx).
Each test gets a fresh in-memory backend from the lifespan hook.
"""

import pytest
from fastapi.testclient import TestClient

from ruleset_engine.api.server import app

from ..fixtures import (
    BPM_TARGET_PTR, CANDIDATES, FEATURE, PROJECT, SESSION, VERTICAL, comps_without_miracle_cure,
)

PROFILE_URL = f"/api/v1/projects/{PROJECT}/lanes/{FEATURE}"


def _override(value=3.0, **extra):
    body = {
        "project_id": PROJECT,
        "lane": FEATURE,
        "scope": "project_default",
        "patch": [{"op": "replace", "path": BPM_TARGET_PTR, "value": value}],
    }
    body.update(extra)
    return body


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("RULESET_STORAGE_BACKEND", "memory")
    with TestClient(app) as test_client:
        yield test_client


class TestLanes:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "online", "lanes": 4}

    def test_lane_registry(self, client):
        lanes = client.get("/api/v1/lanes").json()["lanes"]
        assert [lane["id"] for lane in lanes] == ["documentary", "feature_film", "series", "vertical_drama"]

    def test_bounds(self, client):
        body = client.get(f"/api/v1/lanes/{VERTICAL}/bounds").json()
        assert body["bounds"]["pacing_profile.beats_per_minute.target"] == {"floor": 2.0, "ceiling": 6.0}

    def test_unknown_lane_is_404(self, client):
        response = client.get("/api/v1/lanes/radio_play/bounds")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "UNKNOWN_LANE"

    def test_preview(self, client):
        response = client.post(f"/api/v1/lanes/{VERTICAL}/preview", json={
            "rules": {"pacing_profile": {"beats_per_minute": {"target": 9.0}}},
            "bypass": True,
        })
        body = response.json()
        assert body["rules"]["pacing_profile"]["beats_per_minute"]["target"] == 9.0
        assert body["adjustments"][0]["bypassed"] is True


class TestProfiles:

    def test_read_profile(self, client):
        body = client.get(f"{PROFILE_URL}/profile").json()
        assert body["version"] == 1
        assert body["lane"] == FEATURE
        assert body["rules_summary"].startswith("Lane: feature_film")

    def test_history(self, client):
        client.get(f"{PROFILE_URL}/profile")
        client.post(f"{PROFILE_URL}/rebuild", json={"strategy": "honor_comps"})
        versions = client.get(f"{PROFILE_URL}/history").json()["versions"]
        assert [v["version"] for v in versions] == [1, 2]
        assert versions[1]["strategy"] == "honor_comps"
        assert versions[0]["hard_conflicts"] is False

    def test_history_flags_hard_conflicts(self, client):
        client.post("/api/v1/overrides", json={
            "project_id": PROJECT,
            "lane": FEATURE,
            "scope": "project_default",
            "patch": [{"op": "add", "path": "/forbidden_moves/-", "value": "miracle_cure"}],
        })
        client.put(f"{PROFILE_URL}/comps", json={"suggestion": comps_without_miracle_cure()})
        versions = client.get(f"{PROFILE_URL}/history").json()["versions"]
        assert versions[-1]["hard_conflicts"] is True

    def test_comps_and_settings(self, client):
        response = client.put(f"{PROFILE_URL}/comps", json={
            "candidates": CANDIDATES,
            "suggestion": {"pacing_profile": {"beats_per_minute": {"target": 2.5}}},
        })
        assert response.status_code == 200
        assert "Comps: Succession, Industry" in response.json()["rules_summary"]

        response = client.put(f"{PROFILE_URL}/settings", json={"pacing_feel": "punchy"})
        assert response.json()["rules"]["pacing_profile"]["beats_per_minute"]["target"] == 2.6
        assert client.get(f"{PROFILE_URL}/settings").json()["pacing_feel"] == "punchy"

    def test_bad_setting_is_422(self, client):
        response = client.put(f"{PROFILE_URL}/settings", json={"pacing_feel": "sleepy"})
        assert response.status_code == 422

    def test_bad_confidence_is_422(self, client):
        response = client.put(f"{PROFILE_URL}/comps", json={
            "candidates": [dict(CANDIDATES[0], confidence=1.5)],
        })
        assert response.status_code == 422

    def test_apply_recommended(self, client):
        client.put(f"{PROFILE_URL}/comps", json={"suggestion": {"budgets": {"twist_cap": 0}}})
        client.post("/api/v1/overrides", json={
            "project_id": PROJECT,
            "lane": FEATURE,
            "scope": "project_default",
            "patch": [{"path": "/budgets/twist_cap", "value": 3}],
        })
        body = client.post(f"{PROFILE_URL}/apply-recommended").json()
        assert body["plan"] == {"keep": [], "retract": ["budgets.twist_cap"]}
        assert body["profile"]["rules"]["budgets"]["twist_cap"] == 0


class TestOverrides:

    def test_committed_write(self, client):
        response = client.post("/api/v1/overrides", json=_override(3.0))
        body = response.json()

        assert response.status_code == 200
        assert body["outcome"]["status"] == "committed"
        assert body["outcome"]["target"] == f"{PROJECT}/{FEATURE}/pacing_profile"
        assert body["profile"]["rules"]["pacing_profile"]["beats_per_minute"]["target"] == 3.0
        assert body["conflicts"] == []

    def test_malformed_patch_is_422(self, client):
        response = client.post("/api/v1/overrides", json=_override(
            patch=[{"op": "replace", "path": "/mystery/x", "value": 1}]
        ))
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "MALFORMED_PATCH"
        assert error["context"]["patch_index"] == "0"

    def test_missing_value_is_422(self, client):
        response = client.post("/api/v1/overrides", json=_override(
            patch=[{"op": "replace", "path": BPM_TARGET_PTR}]
        ))
        assert response.status_code == 422
        assert "requires a value" in response.json()["error"]["message"]

    def test_invalid_token_rejected_by_schema(self, client):
        response = client.post("/api/v1/overrides", json=_override(token=0))
        assert response.status_code == 422
        assert "detail" in response.json()

    def test_run_write_without_session_is_404(self, client):
        response = client.post("/api/v1/overrides", json=_override(scope="run"))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"

    def test_locked_write_is_409(self, client):
        client.put(f"{PROFILE_URL}/settings", json={"lock_ruleset": True})
        response = client.post("/api/v1/overrides", json=_override(3.0))

        assert response.status_code == 409
        body = response.json()
        assert body["outcome"]["status"] == "skipped_locked"
        assert body["outcome"]["error"]["code"] == "RULESET_LOCKED"
        assert body["profile"]["rules"]["pacing_profile"]["beats_per_minute"]["target"] == 2.0

    def test_session_lifecycle(self, client):
        response = client.post("/api/v1/overrides", json=_override(3.5, scope="run", session_id=SESSION))
        assert response.json()["outcome"]["scope"] == "run"

        scoped = client.get(f"{PROFILE_URL}/profile", params={"session_id": SESSION}).json()
        assert scoped["rules"]["pacing_profile"]["beats_per_minute"]["target"] == 3.5

        assert client.delete(f"/api/v1/sessions/{SESSION}").json()["dropped_batches"] == 1
        assert client.delete(f"/api/v1/sessions/{SESSION}").status_code == 404

    def test_audit_report(self, client):
        client.post("/api/v1/overrides", json=_override(3.0))
        report = client.get("/api/v1/audit").json()
        assert report["total_entries"] > 0
        assert "coordination" in report["by_layer"]
