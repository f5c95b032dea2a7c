from __future__ import annotations
import asyncio
import ipaddress
import os
import re
import time
import urllib.parse
from typing import Dict, Optional, Set
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response, JSONResponse
from stlbridge.config import ALLOW_PRIVATE_URLS, MAX_UPLOAD_BYTES
from stlbridge.errors import ValidationError
from stlbridge.obs.logging_setup import get_logger

logger = get_logger(__name__)

class SecurityMiddleware(BaseHTTPMiddleware):
    """Rate limiting, request size limits and security headers."""

    def __init__(
        self,
        app,
        rate_limit_requests: int = 100,
        rate_limit_window: int = 60,
        max_request_size: int = MAX_UPLOAD_BYTES + 1024 * 1024,
        timeout_seconds: int = 120
    ):
        super().__init__(app)
        self.rate_limit_requests = rate_limit_requests
        self.rate_limit_window = rate_limit_window
        self.max_request_size = max_request_size
        self.timeout_seconds = timeout_seconds

        # In-memory only; one window per process
        self.request_counts: Dict[str, list] = {}
        self.blocked_ips: Set[str] = set()

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        return request.client.host if request.client else "unknown"

    def _check_rate_limit(self, client_ip: str) -> bool:
        if client_ip == "unknown":
            return True

        current_time = time.time()
        window_start = current_time - self.rate_limit_window

        timestamps = [
            timestamp for timestamp in self.request_counts.get(client_ip, [])
            if timestamp > window_start
        ]
        self.request_counts[client_ip] = timestamps

        if len(timestamps) >= self.rate_limit_requests:
            logger.warning("Rate limit exceeded",
                           client_ip=client_ip,
                           requests_in_window=len(timestamps),
                           limit=self.rate_limit_requests)
            return False

        timestamps.append(current_time)
        return True

    def _check_request_size(self, request: Request) -> bool:
        content_length = request.headers.get("content-length")
        if not content_length:
            return True
        try:
            size = int(content_length)
        except ValueError:
            return True
        if size > self.max_request_size:
            logger.warning("Request size too large",
                           size_bytes=size,
                           limit_bytes=self.max_request_size,
                           client_ip=self._get_client_ip(request))
            return False
        return True

    def _add_security_headers(self, response: Response) -> None:
        security_headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
        for header, value in security_headers.items():
            response.headers.setdefault(header, value)

    async def dispatch(self, request: Request, call_next) -> Response:
        client_ip = self._get_client_ip(request)

        if client_ip in self.blocked_ips:
            logger.warning("Blocked IP attempted access", client_ip=client_ip)
            return JSONResponse({"success": False, "error": "Access denied"}, status_code=403)

        if not self._check_rate_limit(client_ip):
            return JSONResponse(
                {"success": False, "error": "Rate limit exceeded", "retry_after": self.rate_limit_window},
                status_code=429
            )

        if not self._check_request_size(request):
            return JSONResponse({"success": False, "error": "Request too large"}, status_code=413)

        try:
            response = await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("Request timeout",
                         client_ip=client_ip,
                         path=request.url.path,
                         timeout=self.timeout_seconds)
            return JSONResponse({"success": False, "error": "Request timeout"}, status_code=408)

        self._add_security_headers(response)
        return response

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

class ContentSanitizer:
    """Input checks for URLs and file names taken from import requests."""

    @staticmethod
    def sanitize_url(url: str, allow_private: Optional[bool] = None) -> str:
        """Return url unchanged if it is safe for the server to fetch."""
        if allow_private is None:
            allow_private = ALLOW_PRIVATE_URLS

        url = (url or "").strip()
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValidationError("Only HTTP/HTTPS URLs are allowed")

        if allow_private:
            return url

        hostname = parsed.hostname.lower()
        if hostname == "localhost" or hostname.endswith(".localhost"):
            raise ValidationError("Localhost URLs not allowed")

        try:
            address = ipaddress.ip_address(hostname)
        except ValueError:
            return url

        if address.is_loopback or address.is_unspecified:
            raise ValidationError("Localhost URLs not allowed")
        if address.is_private or address.is_link_local or address.is_reserved:
            raise ValidationError("Private IP addresses not allowed")
        return url

    @staticmethod
    def sanitize_file_name(file_name: Optional[str], default: str = "model.stl") -> str:
        """Reduce a client supplied name to a safe basename ending in .stl."""
        name = os.path.basename((file_name or "").replace("\\", "/"))
        name = _UNSAFE_NAME_CHARS.sub("_", name).strip("._")
        if not name:
            return default
        if not name.lower().endswith(".stl"):
            name = f"{name}.stl"
        return name[-128:]
