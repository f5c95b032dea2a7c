"""
Middleware module - HTTP middleware components.

Provides:
- Request ID correlation
- Rate limiting, size limits and security headers
- URL and file name sanitizing for import requests
"""

from .request_id import RequestIDMiddleware
from .security import SecurityMiddleware, ContentSanitizer

__all__ = [
    "RequestIDMiddleware",
    "SecurityMiddleware",
    "ContentSanitizer"
]
