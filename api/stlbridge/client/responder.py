from __future__ import annotations
import urllib.parse
from typing import Any, Dict, Optional, Protocol, Sequence
from stlbridge.config import BRIDGE_VERSION
from stlbridge.obs.logging_setup import get_logger

logger = get_logger(__name__)

INVALID_ORIGINS = frozenset({"", "null"})
DEFAULT_PORTS = {"http": 80, "https": 443}

class BrowsingContext(Protocol):
    """The parts of a window the responder needs.

    ``origin`` is None when the context's origin cannot be observed from
    here, as with a cross-origin parent.
    """
    origin: Optional[str]
    parent: Optional["BrowsingContext"]
    opener: Optional["BrowsingContext"]
    frames: Sequence["FrameElement"]

    def post_message(self, data: Dict[str, Any], target_origin: str) -> None: ...

class FrameElement(Protocol):
    src: str
    content_window: Optional[BrowsingContext]

def resolve_origin(url: str) -> Optional[str]:
    """Origin of url as a browser would serialize it, or None if it has none."""
    try:
        parsed = urllib.parse.urlsplit(url)
        port = parsed.port
    except ValueError:
        return None
    scheme = parsed.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parsed.hostname:
        return None
    origin = f"{scheme}://{parsed.hostname.lower()}"
    if port is not None and port != DEFAULT_PORTS[scheme]:
        origin = f"{origin}:{port}"
    return origin

class DeliveryStrategy:
    """One way of reaching the requester; ``deliver`` reports success."""
    name = "base"

    def deliver(self, window: BrowsingContext, data: Dict[str, Any], origin: str) -> bool:
        raise NotImplementedError

class ParentStrategy(DeliveryStrategy):
    """This context is embedded in the requester's page."""
    name = "parent"

    def deliver(self, window: BrowsingContext, data: Dict[str, Any], origin: str) -> bool:
        parent = window.parent
        if parent is None or parent is window:
            return False
        if parent.origin is not None and parent.origin != origin:
            return False
        try:
            parent.post_message(data, origin)
        except Exception as e:
            logger.warning("Error sending to parent window", origin=origin, error=str(e))
            return False
        return True

class ChildFrameStrategy(DeliveryStrategy):
    """The requester's page is a frame inside this context."""
    name = "child-frame"

    def deliver(self, window: BrowsingContext, data: Dict[str, Any], origin: str) -> bool:
        for frame in window.frames:
            if resolve_origin(frame.src) != origin or frame.content_window is None:
                continue
            try:
                frame.content_window.post_message(data, origin)
            except Exception as e:
                logger.warning("Error sending to child frame", origin=origin, error=str(e))
                continue
            return True
        return False

class OpenerStrategy(DeliveryStrategy):
    """The requester opened this context in a new window or tab."""
    name = "opener"

    def deliver(self, window: BrowsingContext, data: Dict[str, Any], origin: str) -> bool:
        opener = window.opener
        if opener is None:
            return False
        try:
            opener.post_message(data, origin)
        except Exception as e:
            logger.warning("Could not send response to opener", origin=origin, error=str(e))
            return False
        return True

DEFAULT_STRATEGIES = (ParentStrategy(), ChildFrameStrategy(), OpenerStrategy())

class CrossFrameResponder:
    """Routes a response back to the context that sent the request.

    Strategies are tried in order and the first success wins, so a response
    is delivered at most once. ``send`` never raises.
    """

    def __init__(
        self,
        window: BrowsingContext,
        strategies: Sequence[DeliveryStrategy] = DEFAULT_STRATEGIES
    ):
        self.window = window
        self.strategies = tuple(strategies)

    def send(self, origin: Optional[str], data: Dict[str, Any]) -> Optional[str]:
        """Deliver data to origin; returns the name of the strategy that did."""
        if origin is None or origin in INVALID_ORIGINS:
            logger.warning("Cannot send response to invalid origin", origin=str(origin))
            return None

        for strategy in self.strategies:
            try:
                delivered = strategy.deliver(self.window, data, origin)
            except Exception as e:
                logger.error("Delivery strategy failed",
                             strategy=strategy.name, origin=origin, error=str(e))
                continue
            if delivered:
                logger.debug("Sent response",
                             strategy=strategy.name,
                             origin=origin,
                             response_type=str(data.get("type")))
                return strategy.name

        logger.warning("No suitable target found for origin",
                       origin=origin,
                       response_type=str(data.get("type")))
        return None

    def announce_ready(self, version: str = BRIDGE_VERSION) -> int:
        """Post ``fishcad-ready`` to parent and opener; returns deliveries."""
        message = {"type": "fishcad-ready", "ready": True, "version": version}
        delivered = 0
        targets = []
        if self.window.parent is not None and self.window.parent is not self.window:
            targets.append(("parent", self.window.parent))
        if self.window.opener is not None:
            targets.append(("opener", self.window.opener))

        for name, target in targets:
            try:
                target.post_message(dict(message), "*")
            except Exception as e:
                logger.warning("Error announcing readiness", target=name, error=str(e))
                continue
            delivered += 1
        return delivered
