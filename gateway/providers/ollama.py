from __future__ import annotations
from typing import Any, Dict, Tuple

import httpx

from .base import HttpProvider, ProviderError
from .types import TEXT


class OllamaProvider(HttpProvider):
    """Local Ollama server; registered only when a host is configured."""

    name = "ollama"
    kind = TEXT
    requires_credential = False

    def __init__(self, host: str | None, *, model: str = "llama3.2:latest", **kwargs: Any) -> None:
        super().__init__(None, **kwargs)
        self.base_url = (host or "").rstrip("/")
        self.model = model

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def _call(self, client: httpx.AsyncClient, prompt: str, options: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        messages = []
        if options.get("system_prompt"):
            messages.append({"role": "system", "content": options["system_prompt"]})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": options.get("model", self.model),
            "messages": messages,
            "stream": False,
        }
        data = await self._post_json(client, f"{self.base_url}/api/chat", payload)
        content = (data.get("message") or {}).get("content")
        if content is None:
            raise ProviderError("no completion text in response")
        meta = {k: data.get(k) for k in ("total_duration", "load_duration", "prompt_eval_count", "eval_count")}
        return content, meta
