from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Optional, Union
import pydantic
from pydantic import BaseModel, ConfigDict, Field
from stlbridge.client.gatekeeper import IMPORT_TYPES, PING_TYPE, READY_CHECK_TYPE, UPLOAD_TYPE
from stlbridge.config import EMBED_THRESHOLD_BYTES
from stlbridge.errors import ValidationError
from stlbridge.services.stl_decoder import decode_base64_payload

IMPORT_RESPONSE = "stl-import-response"
UPLOAD_RESPONSE = "stl-upload-response"

class RequestKind(str, Enum):
    URL_IMPORT = "url-import"
    INLINE_IMPORT = "inline-import"
    UPLOAD_HANDSHAKE = "upload-handshake"
    READY_CHECK = "ready-check"
    PING = "ping"

class DispatchStrategy(str, Enum):
    EMBED = "embed"
    SERVER = "server"

class ImportMessage(BaseModel):
    """Inbound cross-context message; unknown keys are kept."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str
    stl_url: Optional[str] = Field(None, alias="stlUrl")
    stl_base64: Optional[str] = Field(None, alias="stlBase64")
    file_name: Optional[str] = Field(None, alias="fileName")
    metadata: Optional[Dict[str, Any]] = None
    file_data: Optional[Union[str, bytes]] = Field(None, alias="fileData")

class ImportRequest(BaseModel):
    """A classified message, ready for dispatch."""
    model_config = ConfigDict(frozen=True)

    kind: RequestKind
    message_type: str
    stl_url: Optional[str] = None
    payload: Optional[Union[str, bytes]] = None
    file_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_import(self) -> bool:
        return self.kind in (
            RequestKind.URL_IMPORT,
            RequestKind.INLINE_IMPORT,
            RequestKind.UPLOAD_HANDSHAKE,
        )

    @property
    def display_name(self) -> str:
        return self.file_name or "model.stl"

    def decode_payload(self) -> bytes:
        """Model bytes carried inline; base64 text and data URLs are decoded."""
        if self.payload is None:
            raise ValidationError("No file data provided")
        if isinstance(self.payload, bytes):
            return self.payload
        return decode_base64_payload(self.payload)

def response_type_for(message_type: str) -> str:
    """Type of the response message that answers message_type."""
    if message_type in IMPORT_TYPES:
        return IMPORT_RESPONSE
    return f"{message_type}-response"

def classify(message: Dict[str, Any]) -> ImportRequest:
    """Determine the shape of an admitted message.

    Raises ValidationError for malformed messages and for import requests
    that carry neither ``stlUrl`` nor ``stlBase64``.
    """
    try:
        parsed = ImportMessage.model_validate(message)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed message: {e.errors()[0]['msg']}") from e

    common = {
        "message_type": parsed.type,
        "file_name": parsed.file_name,
        "metadata": parsed.metadata or {},
        "raw": dict(message),
    }

    if parsed.type in IMPORT_TYPES:
        if parsed.stl_url:
            return ImportRequest(kind=RequestKind.URL_IMPORT, stl_url=parsed.stl_url, **common)
        if parsed.stl_base64:
            return ImportRequest(kind=RequestKind.INLINE_IMPORT, payload=parsed.stl_base64, **common)
        raise ValidationError("Import request requires stlUrl or stlBase64")

    if parsed.type == UPLOAD_TYPE:
        return ImportRequest(kind=RequestKind.UPLOAD_HANDSHAKE, payload=parsed.file_data or None, **common)
    if parsed.type == READY_CHECK_TYPE:
        return ImportRequest(kind=RequestKind.READY_CHECK, **common)
    if parsed.type == PING_TYPE:
        return ImportRequest(kind=RequestKind.PING, **common)

    raise ValidationError(f"Unrecognized message type: {parsed.type}")

def estimate_decoded_size(encoded: Union[str, bytes]) -> float:
    """Approximate decoded size of a payload; base64 text is 4/3 of its bytes."""
    if isinstance(encoded, bytes):
        return float(len(encoded))
    return len(encoded) * 0.75

def select_strategy(
    request: ImportRequest,
    threshold: int = EMBED_THRESHOLD_BYTES
) -> DispatchStrategy:
    """Inline payloads below threshold are embedded; everything else goes to the server."""
    if request.kind == RequestKind.URL_IMPORT:
        return DispatchStrategy.SERVER
    if request.kind in (RequestKind.INLINE_IMPORT, RequestKind.UPLOAD_HANDSHAKE):
        if request.payload is not None and estimate_decoded_size(request.payload) < threshold:
            return DispatchStrategy.EMBED
        return DispatchStrategy.SERVER
    raise ValidationError(f"{request.message_type} does not carry a model")
