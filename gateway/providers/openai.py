from __future__ import annotations
from typing import Any, Dict, Tuple

import httpx

from .base import HttpProvider, ProviderError, decode_image_b64
from .types import IMAGE, TEXT

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"


class OpenAIChatProvider(HttpProvider):
    """Any OpenAI-compatible `/chat/completions` endpoint (OpenAI, Groq, ...)."""

    kind = TEXT

    def __init__(
        self,
        api_key: str | None,
        *,
        name: str = "openai",
        model: str = "gpt-4o-mini",
        base_url: str = OPENAI_BASE_URL,
        system_prompt: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key, **kwargs)
        self.name = name
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.system_prompt = system_prompt

    async def _call(self, client: httpx.AsyncClient, prompt: str, options: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        messages = []
        system = options.get("system_prompt", self.system_prompt)
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {
            "model": options.get("model", self.model),
            "messages": messages,
            "temperature": options.get("temperature", 0.7),
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        data = await self._post_json(client, f"{self.base_url}/chat/completions", payload, headers)
        content = (
            (data.get("choices") or [{}])[0]
            .get("message", {})
            .get("content")
        )
        if content is None:
            raise ProviderError("no completion text in response")
        meta = {
            "model": data.get("model"),
            "usage": data.get("usage"),
        }
        return content, meta


class OpenAIImageProvider(HttpProvider):
    kind = IMAGE
    name = "openai-image"

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = "dall-e-3",
        size: str = "1024x1024",
        base_url: str = OPENAI_BASE_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key, **kwargs)
        self.model = model
        self.size = size
        self.base_url = base_url.rstrip("/")

    async def _call(self, client: httpx.AsyncClient, prompt: str, options: Dict[str, Any]) -> Tuple[bytes, Dict[str, Any]]:
        payload = {
            "model": options.get("model", self.model),
            "prompt": prompt,
            "n": 1,
            "size": options.get("size", self.size),
            "response_format": "b64_json",
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        data = await self._post_json(client, f"{self.base_url}/images/generations", payload, headers)
        items = data.get("data") or []
        b64 = items[0].get("b64_json") if items else None
        if not b64:
            raise ProviderError("no image data in response")
        meta = {"model": payload["model"], "revised_prompt": items[0].get("revised_prompt")}
        return decode_image_b64(b64), meta
