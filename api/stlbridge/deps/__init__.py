"""
Dependencies module - FastAPI dependency providers.

Provides:
- Job registry and import service lookups from application state
"""

from .services import get_registry, get_import_service

__all__ = [
    "get_registry",
    "get_import_service"
]
