"""
Data models and schemas.

Provides:
- Pydantic models for the import API requests/responses
- Wire snapshot of an import job
"""

from .schemas import (
    ImportStlRequest,
    JobSnapshot,
    ImportResponse,
    JobStatusResponse,
    ErrorResponse
)

__all__ = [
    "ImportStlRequest",
    "JobSnapshot",
    "ImportResponse",
    "JobStatusResponse",
    "ErrorResponse"
]
