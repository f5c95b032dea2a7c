"""
Browser-side import bridge.

Provides:
- Origin gatekeeping for cross-context messages
- Request classification and embed/server strategy selection
- Cross-frame response routing (parent, child frame, opener)
- HTTP and realtime channel clients for the import server
- Scene loader protocol with a headless implementation
"""

from .gatekeeper import OriginGatekeeper, RECOGNIZED_TYPES
from .classifier import (
    DispatchStrategy,
    ImportRequest,
    RequestKind,
    classify,
    estimate_decoded_size,
    select_strategy
)
from .responder import (
    CrossFrameResponder,
    ParentStrategy,
    ChildFrameStrategy,
    OpenerStrategy,
    resolve_origin
)
from .scene import SceneLoader, HeadlessSceneLoader
from .api_client import ImportApiClient
from .channel import ChannelClient, InProcessChannelClient, SSEChannelClient
from .bridge import ImportBridge, ActiveImportView, ImportStats

__all__ = [
    "OriginGatekeeper",
    "RECOGNIZED_TYPES",
    "DispatchStrategy",
    "ImportRequest",
    "RequestKind",
    "classify",
    "estimate_decoded_size",
    "select_strategy",
    "CrossFrameResponder",
    "ParentStrategy",
    "ChildFrameStrategy",
    "OpenerStrategy",
    "resolve_origin",
    "SceneLoader",
    "HeadlessSceneLoader",
    "ImportApiClient",
    "ChannelClient",
    "InProcessChannelClient",
    "SSEChannelClient",
    "ImportBridge",
    "ActiveImportView",
    "ImportStats"
]
