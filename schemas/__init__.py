"""
Pydantic schemas for the HTTP surface.

Schemas:
    api: admin request/response bodies (camelCase on the wire), public
        search results and the health check

Usage:
    from schemas.api import MigrateRequest, SearchResponse

Example:
    body = MigrateRequest.model_validate({"action": "continue", "batchSize": 20})
    assert body.batch_size == 20
"""

__all__ = [
    "MigrateRequest",
    "MigrateContinueResponse",
    "MigrationJobRequest",
    "SearchResponse",
    "SchoolResponse",
    "SchoolsByPredioResponse",
    "HealthCheckResponse",
]
