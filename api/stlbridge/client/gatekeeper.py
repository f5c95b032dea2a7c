from __future__ import annotations
from typing import Any, Dict, Iterable, Optional
from stlbridge.config import ALLOWED_ORIGINS, DEV_MODE
from stlbridge.obs.logging_setup import get_logger

logger = get_logger(__name__)

IMPORT_TYPES = frozenset({"import-stl", "stl-import"})
UPLOAD_TYPE = "stl-upload"
READY_CHECK_TYPE = "fishcad-ready-check"
PING_TYPE = "ping"

RECOGNIZED_TYPES = IMPORT_TYPES | {UPLOAD_TYPE, READY_CHECK_TYPE, PING_TYPE}

class OriginGatekeeper:
    """First filter for every cross-context message.

    Rejections are only logged. Nothing is sent back, so a probing origin
    cannot learn whether it is on the allow-list.
    """

    def __init__(
        self,
        allowed_origins: Iterable[str] = ALLOWED_ORIGINS,
        dev_mode: bool = DEV_MODE
    ):
        self.allowed_origins = frozenset(allowed_origins)
        self.dev_mode = dev_mode
        if dev_mode:
            logger.warning("Origin allow-list disabled (development mode)")

    def is_allowed(self, origin: Optional[str]) -> bool:
        return self.dev_mode or origin in self.allowed_origins

    def admit(self, origin: Optional[str], data: Any) -> Optional[Dict[str, Any]]:
        """Return the message if it may be processed, otherwise None."""
        if not self.is_allowed(origin):
            message_type = data.get("type") if isinstance(data, dict) else None
            logger.info("Ignored message from non-allowed origin",
                        origin=str(origin),
                        message_type=str(message_type))
            return None

        if not isinstance(data, dict):
            logger.info("Ignored message with invalid data format",
                        origin=origin,
                        data_type=type(data).__name__)
            return None

        message_type = data.get("type")
        if not isinstance(message_type, str) or message_type not in RECOGNIZED_TYPES:
            logger.info("Ignored message with unrecognized type",
                        origin=origin,
                        message_type=str(message_type))
            return None

        return dict(data)
