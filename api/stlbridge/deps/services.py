from __future__ import annotations
from fastapi import Request
from stlbridge.services.import_service import ImportService
from stlbridge.services.job_tracker import JobRegistry

def get_registry(request: Request) -> JobRegistry:
    """The application's job registry, created in ``create_app``."""
    return request.app.state.registry

def get_import_service(request: Request) -> ImportService:
    return request.app.state.import_service
