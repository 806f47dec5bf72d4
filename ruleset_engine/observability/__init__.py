"""
Observability & Audit Layer

RESPONSIBILITY: Audit logging, metrics, profile lineage tracking
ALLOWED INPUTS: Audit entries and metric points from other layers
OUTPUTS: Unified audit log, metric series, lineage graph, audit report

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events (only record them)
- Make decisions based on logged data
- Block or delay writes

BOUNDARY ENFORCEMENT:
=====================
- Receives immutable entries (frozen dataclasses)
- NEVER modifies entries or system state
- Provides read-only access to logs and metrics
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from enum import Enum
import hashlib

from ..contracts.base import Timestamp
from ..contracts.events import AuditLogEntry, AuditEventType, MetricPoint


LAYERS: Tuple[str, ...] = (
    "lanes",
    "clamp",
    "patching",
    "conflicts",
    "resolution",
    "coordination",
    "storage",
    "engine",
)


# =============================================================================
# LOG COLLECTORS (One per layer)
# =============================================================================

class LogCollector:
    """
    Per-layer audit log collector.

    Collectors are append-only - no modification of collected data.
    """

    def __init__(self, layer_name: str):
        self._layer_name = layer_name
        self._entries: List[AuditLogEntry] = []
        self._seen: set = set()

    def collect(self, entry: AuditLogEntry):
        """Collect an audit entry (append-only, idempotent per entry id)."""
        if entry.entry_id in self._seen:
            return
        self._seen.add(entry.entry_id)
        self._entries.append(entry)

    def get_entries(
        self,
        since: Optional[Timestamp] = None,
        event_type: Optional[AuditEventType] = None
    ) -> List[AuditLogEntry]:
        """Get entries, optionally filtered."""
        entries = self._entries
        if since:
            entries = [e for e in entries if e.timestamp.value >= since.value]
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        return list(entries)

    @property
    def layer_name(self) -> str:
        return self._layer_name


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class MetricType(Enum):
    """Types of metrics collected."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMING = "timing"


@dataclass
class MetricDefinition:
    """Definition of a metric to collect."""
    name: str
    metric_type: MetricType
    description: str
    labels: Tuple[str, ...] = field(default_factory=tuple)


class MetricsCollector:
    """
    Collect and aggregate metrics from all layers.

    Metrics are append-only time series data points.
    """

    def __init__(self):
        self._metrics: Dict[str, List[MetricPoint]] = {}
        self._definitions: Dict[str, MetricDefinition] = {}
        self._register_default_metrics()

    def _register_default_metrics(self):
        """Register standard metrics."""
        defaults = [
            MetricDefinition(
                name="resolutions_total",
                metric_type=MetricType.COUNTER,
                description="Total number of ruleset resolutions",
                labels=("lane", "strategy")
            ),
            MetricDefinition(
                name="clamp_warnings_total",
                metric_type=MetricType.COUNTER,
                description="Clamp warnings emitted by resolutions and previews",
                labels=("lane",)
            ),
            MetricDefinition(
                name="conflicts_detected_total",
                metric_type=MetricType.COUNTER,
                description="Conflicts between comps and overrides",
                labels=("severity",)
            ),
            MetricDefinition(
                name="stale_writes_discarded_total",
                metric_type=MetricType.COUNTER,
                description="Write completions discarded because a newer token exists"
            ),
            MetricDefinition(
                name="failed_writes_total",
                metric_type=MetricType.COUNTER,
                description="Writes that settled in the failed state",
                labels=("scope",)
            ),
            MetricDefinition(
                name="write_latency_ms",
                metric_type=MetricType.TIMING,
                description="Override write latency in milliseconds",
                labels=("scope",)
            ),
            MetricDefinition(
                name="patch_batches_rejected_total",
                metric_type=MetricType.COUNTER,
                description="Override batches rejected as malformed"
            ),
        ]

        for definition in defaults:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition):
        """Register a new metric definition."""
        self._definitions[definition.name] = definition
        if definition.name not in self._metrics:
            self._metrics[definition.name] = []

    def record(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """Record a metric data point."""
        if metric_name not in self._metrics:
            self._metrics[metric_name] = []

        label_tuple = tuple(sorted(labels.items())) if labels else ()

        point = MetricPoint(
            metric_name=metric_name,
            value=value,
            timestamp=Timestamp.now(),
            labels=label_tuple
        )
        self._metrics[metric_name].append(point)

    def get_metric(self, metric_name: str) -> List[MetricPoint]:
        return list(self._metrics.get(metric_name, []))

    def total(self, metric_name: str) -> float:
        """Sum of all recorded values (the counter value for counters)."""
        return sum(p.value for p in self._metrics.get(metric_name, []))

    def summary(self) -> Dict[str, Dict[str, object]]:
        """Point count and running total per registered metric."""
        return {
            name: {
                "type": definition.metric_type.value,
                "points": len(self._metrics.get(name, [])),
                "total": self.total(name),
            }
            for name, definition in sorted(self._definitions.items())
        }


# =============================================================================
# LINEAGE TRACKER
# =============================================================================

@dataclass(frozen=True)
class LineageNode:
    """Immutable node in the lineage graph."""
    entity_id: str
    entity_type: str
    timestamp: Timestamp
    parent_ids: Tuple[str, ...] = field(default_factory=tuple)
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


class LineageTracker:
    """
    Track which profile superseded which, and what inputs produced it.

    Entity ids are profile revision keys ("<profile id>@<version>"),
    override batch ids and comps record keys.
    """

    def __init__(self):
        self._nodes: Dict[str, LineageNode] = {}

    def record_lineage(
        self,
        entity_id: str,
        entity_type: str,
        parent_ids: Optional[List[str]] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> LineageNode:
        """Record a lineage entry."""
        node = LineageNode(
            entity_id=entity_id,
            entity_type=entity_type,
            timestamp=Timestamp.now(),
            parent_ids=tuple(parent_ids) if parent_ids else (),
            metadata=tuple(sorted(metadata.items())) if metadata else ()
        )

        self._nodes[entity_id] = node
        return node

    def get_node(self, entity_id: str) -> Optional[LineageNode]:
        return self._nodes.get(entity_id)


# =============================================================================
# OBSERVABILITY ENGINE (Orchestrates all observability)
# =============================================================================

@dataclass
class ObservabilityConfig:
    """Configuration for observability engine."""
    enable_metrics: bool = True
    enable_lineage: bool = True


class ObservabilityEngine:
    """
    Central Observability Engine.

    BOUNDARY ENFORCEMENT:
    - ONLY observes, never modifies
    - Provides read-only access to collected data
    """

    def __init__(self, config: Optional[ObservabilityConfig] = None):
        self._config = config or ObservabilityConfig()

        # Log collectors per layer
        self._collectors: Dict[str, LogCollector] = {
            layer: LogCollector(layer) for layer in LAYERS
        }

        self._metrics = MetricsCollector() if self._config.enable_metrics else None
        self._lineage = LineageTracker() if self._config.enable_lineage else None
        self._sequence = 0

    def collect_audit(self, entry: AuditLogEntry):
        """Collect an audit log entry from any layer."""
        collector = self._collectors.get(entry.layer)
        if collector:
            collector.collect(entry)

    def log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        event_type: AuditEventType = AuditEventType.SYSTEM,
        layer: str = "engine",
        metadata: Tuple[Tuple[str, str], ...] = ()
    ) -> AuditLogEntry:
        """Helper to log audit entry directly."""
        self._sequence += 1
        entry_id = hashlib.sha256(
            f"{layer}_{action}|{self._sequence}|{Timestamp.now().value.timestamp()}".encode()
        ).hexdigest()[:16]

        entry = AuditLogEntry(
            entry_id=f"audit_{entry_id}",
            event_type=event_type,
            timestamp=Timestamp.now(),
            layer=layer,
            action=action,
            entity_id=entity_id,
            metadata=metadata
        )
        self.collect_audit(entry)
        return entry

    def collect_metric(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """Collect a metric data point."""
        if self._metrics:
            self._metrics.record(metric_name, value, labels)

    def record_lineage(
        self,
        entity_id: str,
        entity_type: str,
        parent_ids: Optional[List[str]] = None,
        metadata: Optional[Dict[str, str]] = None
    ):
        """Record data lineage."""
        if self._lineage:
            self._lineage.record_lineage(
                entity_id=entity_id,
                entity_type=entity_type,
                parent_ids=parent_ids,
                metadata=metadata
            )

    def get_unified_log(
        self,
        since: Optional[Timestamp] = None,
        layers: Optional[List[str]] = None
    ) -> List[AuditLogEntry]:
        """Get unified log from all or specified layers."""
        target_layers = layers or list(self._collectors.keys())

        all_entries = []
        for layer_name in target_layers:
            collector = self._collectors.get(layer_name)
            if collector:
                all_entries.extend(collector.get_entries(since=since))

        all_entries.sort(key=lambda e: e.timestamp.value)
        return all_entries

    def get_metrics(self) -> Optional[MetricsCollector]:
        """Get metrics collector (read-only access)."""
        return self._metrics

    def get_lineage(self) -> Optional[LineageTracker]:
        """Get lineage tracker (read-only access)."""
        return self._lineage

    def generate_audit_report(self, since: Optional[Timestamp] = None) -> Dict:
        """Generate comprehensive audit report."""
        entries = self.get_unified_log(since=since)

        by_layer: Dict[str, int] = {}
        by_type: Dict[str, int] = {}

        for entry in entries:
            by_layer[entry.layer] = by_layer.get(entry.layer, 0) + 1
            by_type[entry.event_type.value] = by_type.get(entry.event_type.value, 0) + 1

        return {
            'total_entries': len(entries),
            'by_layer': by_layer,
            'by_event_type': by_type,
            'metrics': self._metrics.summary() if self._metrics else {},
            'time_range': {
                'start': entries[0].timestamp.to_iso() if entries else None,
                'end': entries[-1].timestamp.to_iso() if entries else None,
            },
            'generated_at': Timestamp.now().to_iso()
        }
