from __future__ import annotations
import json
from typing import Any, Dict, Optional
import httpx
from stlbridge.config import API_BASE_URL
from stlbridge.errors import TransportError
from stlbridge.obs.logging_setup import get_logger

logger = get_logger(__name__)

class ImportApiClient:
    """httpx client for the server-mediated import endpoints."""

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=timeout,
            headers={"Accept": "application/json"}
        )

    def model_url(self, import_id: str) -> str:
        return f"{self.base_url}/models/{import_id}"

    async def import_stl(
        self,
        stl_url: str,
        file_name: str = "model.stl",
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """POST /import-stl; returns ``{success, importId, job}``."""
        return await self._send("POST", "/import-stl", json={
            "stlUrl": stl_url,
            "fileName": file_name,
            "source": source,
            "metadata": metadata or {}
        }, failure="Failed to start import")

    async def upload(
        self,
        data: bytes,
        file_name: str = "model.stl",
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """POST /upload as multipart; returns ``{success, importId, job}``."""
        form = {"fileName": file_name}
        if source:
            form["source"] = source
        if metadata:
            form["metadata"] = json.dumps(metadata)
        return await self._send(
            "POST",
            "/upload",
            files={"file": (file_name, data, "model/stl")},
            data=form,
            failure="Failed to upload model"
        )

    async def get_status(self, import_id: str) -> Dict[str, Any]:
        return await self._send("GET", f"/import-status/{import_id}", failure="Failed to fetch status")

    async def cancel(self, import_id: str) -> Dict[str, Any]:
        return await self._send("POST", f"/import-status/{import_id}/cancel", failure="Failed to cancel import")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, failure: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Import API request failed", path=path, error=str(e))
            raise TransportError(f"{failure}: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error:
            detail = body.get("error") if isinstance(body, dict) else None
            raise TransportError(
                f"Server returned {response.status_code}: {detail or response.reason_phrase}",
                status_code=response.status_code
            )
        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise TransportError(error or failure, status_code=response.status_code)
        return body
