"""Request/response models used by the API."""

from intentgraph.models.schemas import (
    DeltaResponse,
    HealthResponse,
    NodesResponse,
    ValidationResponse,
)

__all__ = [
    "DeltaResponse",
    "HealthResponse",
    "NodesResponse",
    "ValidationResponse",
]
