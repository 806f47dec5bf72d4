"""
HTTP API for the ruleset engine.

Thin FastAPI layer: request models in schemas, DTO mapping in mapper,
routes in server. No resolution logic lives here.
"""
