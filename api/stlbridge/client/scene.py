from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Union
import httpx
from stlbridge.errors import TransportError
from stlbridge.obs.logging_setup import get_logger
from stlbridge.services.stl_decoder import StlMesh, decode_stl

logger = get_logger(__name__)

class SceneLoader(Protocol):
    """Adds a model to the editor scene.

    ``source`` is either a URL the loader fetches itself or the model bytes.
    Raises a descriptive error when the data is not valid STL geometry.
    """

    async def load_model(self, source: Union[str, bytes], display_name: Optional[str]) -> Any: ...

@dataclass
class LoadedModel:
    name: str
    mesh: StlMesh
    origin: str

class HeadlessSceneLoader:
    """SceneLoader without a renderer: decodes models and keeps a list of them."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        self._transport = transport
        self._timeout = timeout
        self.models: List[LoadedModel] = []
        self.selected: Optional[int] = None

    async def load_model(self, source: Union[str, bytes], display_name: Optional[str]) -> LoadedModel:
        if isinstance(source, str):
            data = await self._fetch(source)
            origin = source
        else:
            data = source
            origin = "inline"

        mesh = decode_stl(data)
        model = LoadedModel(name=display_name or "model.stl", mesh=mesh, origin=origin)
        self.models.append(model)
        self.selected = len(self.models) - 1
        logger.info("Model added to scene",
                    model_name=model.name,
                    triangles=mesh.triangle_count,
                    from_url=isinstance(source, str))
        return model

    async def _fetch(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Model download returned {e.response.status_code}",
                status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Model download failed: {e}") from e
