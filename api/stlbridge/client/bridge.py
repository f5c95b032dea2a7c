from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
from stlbridge.client.api_client import ImportApiClient
from stlbridge.client.channel import ChannelClient
from stlbridge.client.classifier import (
    DispatchStrategy,
    IMPORT_RESPONSE,
    ImportRequest,
    RequestKind,
    UPLOAD_RESPONSE,
    classify,
    response_type_for,
    select_strategy,
)
from stlbridge.client.gatekeeper import OriginGatekeeper
from stlbridge.client.responder import CrossFrameResponder
from stlbridge.client.scene import SceneLoader
from stlbridge.config import BRIDGE_VERSION, EMBED_THRESHOLD_BYTES
from stlbridge.errors import ValidationError
from stlbridge.obs.logging_setup import get_logger
from stlbridge.services.job_tracker import progress_for_status
from stlbridge.services.realtime import IMPORT_COMPLETED, IMPORT_FAILED, STATUS_UPDATE

logger = get_logger(__name__)

TERMINAL_JOB_STATUSES = frozenset({"completed", "failed"})

Notifier = Callable[[str, str], None]

@dataclass
class ActiveImportView:
    """Local projection of a server job; the server stays authoritative."""
    id: str
    job: Dict[str, Any]
    source: str
    progress: int = 0
    request: Optional[ImportRequest] = None
    settled: bool = False

    @property
    def status(self) -> str:
        return self.job.get("status", "pending")

    def update(self, job: Dict[str, Any]) -> None:
        self.job = job
        self.progress = progress_for_status(self.status)

@dataclass
class ImportStats:
    total_imports: int = 0
    successful_imports: int = 0
    import_errors: int = 0
    last_import_time: Optional[float] = None
    imports_by_origin: Dict[str, int] = field(default_factory=dict)

    def record_request(self, origin: str) -> None:
        self.total_imports += 1
        self.imports_by_origin[origin] = self.imports_by_origin.get(origin, 0) + 1
        self.last_import_time = time.time()

    def record_success(self) -> None:
        self.successful_imports += 1

    def record_error(self) -> None:
        self.import_errors += 1

class ImportBridge:
    """Browser side of the import pipeline.

    Admits messages through the gatekeeper, classifies them, imports inline
    payloads directly into the scene when they are small enough and hands
    everything else to the server. Server jobs are followed over the realtime
    channel until they settle; every outcome is answered through the
    responder. ``handle_message`` never raises.
    """

    def __init__(
        self,
        responder: CrossFrameResponder,
        scene_loader: SceneLoader,
        api: ImportApiClient,
        channel: ChannelClient,
        gatekeeper: Optional[OriginGatekeeper] = None,
        embed_threshold: int = EMBED_THRESHOLD_BYTES,
        notify: Optional[Notifier] = None,
        version: str = BRIDGE_VERSION
    ):
        self.responder = responder
        self.scene_loader = scene_loader
        self.api = api
        self.channel = channel
        self.gatekeeper = gatekeeper or OriginGatekeeper()
        self.embed_threshold = embed_threshold
        self.notify = notify
        self.version = version
        self.ready = False
        self.active_imports: Dict[str, ActiveImportView] = {}
        self.stats = ImportStats()

        channel.on(STATUS_UPDATE, self._on_status_update)
        channel.on(IMPORT_COMPLETED, self._on_import_completed)
        channel.on(IMPORT_FAILED, self._on_import_failed)
        channel.on_reconnect(self.on_channel_reconnected)

    def start(self) -> int:
        """Mark the bridge ready and announce it to parent and opener."""
        self.ready = True
        return self.responder.announce_ready(self.version)

    async def handle_message(self, origin: Optional[str], data: Any) -> None:
        message = self.gatekeeper.admit(origin, data)
        if message is None:
            return

        logger.info("Processing message", origin=origin, message_type=message["type"])
        try:
            request = classify(message)
            await self._dispatch(request, origin)
        except Exception as e:
            logger.error("Error handling message",
                         origin=origin,
                         message_type=message["type"],
                         error=str(e))
            if message["type"] in ("import-stl", "stl-import", "stl-upload"):
                self.stats.record_error()
                self._notify("error", f"Failed to import model: {e}")
            self.responder.send(origin, {
                "type": response_type_for(message["type"]),
                "success": False,
                "error": str(e)
            })

    async def retry(self, import_id: str) -> None:
        """Resubmit a failed import's original request as a new import."""
        view = self.active_imports.get(import_id)
        if view is None or view.status != "failed" or view.request is None:
            raise ValidationError(f"Import {import_id} cannot be retried")

        del self.active_imports[import_id]
        logger.info("Retrying import", import_id=import_id, origin=view.source)
        try:
            await self._dispatch(view.request, view.source)
        except Exception as e:
            self.stats.record_error()
            self.responder.send(view.source, {
                "type": IMPORT_RESPONSE,
                "success": False,
                "error": str(e)
            })

    async def on_channel_reconnected(self) -> None:
        """Re-join the room of every import that has not settled yet."""
        for import_id, view in list(self.active_imports.items()):
            if view.status not in TERMINAL_JOB_STATUSES:
                await self.channel.join(import_id)

    async def dismiss(self) -> None:
        """Leave every room and forget all tracked imports."""
        for import_id in list(self.active_imports):
            await self.channel.leave(import_id)
        self.active_imports.clear()

    async def _dispatch(self, request: ImportRequest, origin: str) -> None:
        if request.kind == RequestKind.READY_CHECK:
            self.responder.send(origin, {
                "type": "fishcad-ready-response",
                "ready": self.ready,
                "version": self.version
            })
        elif request.kind == RequestKind.PING:
            self.responder.send(origin, {
                "type": "pong",
                "timestamp": int(time.time() * 1000),
                "originalMessage": request.raw
            })
        elif request.kind == RequestKind.URL_IMPORT:
            self.stats.record_request(origin)
            await self._import_from_url(request, origin)
        elif request.kind == RequestKind.INLINE_IMPORT:
            self.stats.record_request(origin)
            await self._import_inline(request, origin, IMPORT_RESPONSE)
        elif request.kind == RequestKind.UPLOAD_HANDSHAKE:
            if request.payload is None:
                raise ValidationError("No file data provided")
            self.stats.record_request(origin)
            self.responder.send(origin, {"type": "stl-upload-ready", "success": True})
            await self._import_inline(request, origin, UPLOAD_RESPONSE)

    async def _import_from_url(self, request: ImportRequest, origin: str) -> None:
        self._notify("loading", f"Importing model from {origin}...")
        result = await self.api.import_stl(
            request.stl_url,
            file_name=request.display_name,
            source=origin,
            metadata=request.metadata
        )
        await self._track(result, origin, request, IMPORT_RESPONSE)

    async def _import_inline(self, request: ImportRequest, origin: str, response_type: str) -> None:
        if select_strategy(request, self.embed_threshold) == DispatchStrategy.EMBED:
            try:
                await self.scene_loader.load_model(request.decode_payload(), request.display_name)
            except Exception as e:
                logger.warning("Direct import failed, falling back to server",
                               origin=origin,
                               error=str(e))
            else:
                self.stats.record_success()
                self._notify("success", f"Imported model from {origin}")
                self.responder.send(origin, {
                    "type": response_type,
                    "success": True,
                    "message": "Model imported successfully"
                })
                return

        result = await self.api.upload(
            request.decode_payload(),
            file_name=request.display_name,
            source=origin,
            metadata=request.metadata
        )
        await self._track(result, origin, request, response_type)

    async def _track(
        self,
        result: Dict[str, Any],
        origin: str,
        request: ImportRequest,
        response_type: str
    ) -> None:
        import_id = result["importId"]
        view = ActiveImportView(id=import_id, job=result["job"], source=origin, request=request)
        view.update(result["job"])
        self.active_imports[import_id] = view

        await self.channel.join(import_id)

        self.responder.send(origin, {
            "type": response_type,
            "success": True,
            "importId": import_id,
            "message": "Import started successfully"
        })
        self._notify("success", f"Import started: {request.display_name}")

    async def _on_status_update(self, data: Dict[str, Any]) -> None:
        view = self.active_imports.get(data.get("importId"))
        if view is None:
            return
        view.update(data["job"])

    async def _on_import_completed(self, data: Dict[str, Any]) -> None:
        import_id = data.get("importId")
        view = self.active_imports.get(import_id)
        if view is None or view.settled:
            return
        view.settled = True
        view.update(data["job"])

        file_name = data["job"].get("fileName")
        self._notify("success", f"Model imported successfully: {file_name}")
        try:
            await self.scene_loader.load_model(self.api.model_url(import_id), file_name)
        except Exception as e:
            logger.error("Error loading model into scene", import_id=import_id, error=str(e))
            self.stats.record_error()
            self._notify("error", f"Failed to load model into scene: {e}")
            self.responder.send(view.source, {
                "type": IMPORT_RESPONSE,
                "success": False,
                "importId": import_id,
                "error": f"Failed to load model into scene: {e}"
            })
        else:
            self.stats.record_success()
            self.responder.send(view.source, {
                "type": IMPORT_RESPONSE,
                "success": True,
                "importId": import_id,
                "message": "Model loaded into scene"
            })
        finally:
            await self.channel.leave(import_id)

    async def _on_import_failed(self, data: Dict[str, Any]) -> None:
        import_id = data.get("importId")
        view = self.active_imports.get(import_id)
        if view is None or view.settled:
            return
        view.settled = True
        view.update(data["job"])

        error = data.get("error") or "Import failed"
        self.stats.record_error()
        self._notify("error", f"Import failed: {error}")
        self.responder.send(view.source, {
            "type": IMPORT_RESPONSE,
            "success": False,
            "importId": import_id,
            "error": error
        })
        await self.channel.leave(import_id)

    def _notify(self, level: str, message: str) -> None:
        if self.notify is not None:
            try:
                self.notify(level, message)
            except Exception as e:
                logger.warning("Notification callback failed", error=str(e))
