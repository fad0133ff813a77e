from __future__ import annotations
from typing import Any, Dict, Tuple

import httpx

from .base import HttpProvider, ProviderError, decode_image_b64
from .types import IMAGE


class StableDiffusionWebUIProvider(HttpProvider):
    """AUTOMATIC1111-style `/sdapi/v1/txt2img` endpoint; needs no credential, only a URL."""

    name = "sd-webui"
    kind = IMAGE
    requires_credential = False

    def __init__(
        self,
        base_url: str | None,
        *,
        width: int = 512,
        height: int = 512,
        steps: int = 25,
        **kwargs: Any,
    ) -> None:
        super().__init__(None, **kwargs)
        self.base_url = (base_url or "").rstrip("/")
        self.width = width
        self.height = height
        self.steps = steps

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def _call(self, client: httpx.AsyncClient, prompt: str, options: Dict[str, Any]) -> Tuple[bytes, Dict[str, Any]]:
        payload = {
            "prompt": prompt,
            "width": options.get("width", self.width),
            "height": options.get("height", self.height),
            "steps": options.get("steps", self.steps),
        }
        data = await self._post_json(client, f"{self.base_url}/sdapi/v1/txt2img", payload)
        images = data.get("images") or []
        if not images:
            raise ProviderError("no images in response")
        return decode_image_b64(images[0]), {"steps": payload["steps"]}
