from __future__ import annotations
import asyncio
import base64
import binascii
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from .types import IMAGE, TEXT, Payload, ProviderRequest, ProviderResponse, sniff_image_mime


DEFAULT_TIMEOUT_S = 60.0


class ProviderError(Exception):
    """Raised inside an adapter call; never escapes `invoke`."""

    def __init__(self, message: str, meta: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.meta = meta or {}


def decode_image_b64(value: str) -> bytes:
    """Decode a base64 string (optionally a data URL) into recognised image bytes."""
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    try:
        data = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProviderError(f"invalid base64 image payload: {e}")
    if sniff_image_mime(data) is None:
        raise ProviderError("payload is not a recognised image")
    return data


class HttpProvider:
    """One external generation backend behind a uniform `invoke` call.

    Subclasses implement `_call`, returning the raw payload plus metadata, and may
    raise anything: `invoke` converts every failure path (timeout, non-2xx status,
    missing field, empty content) into `ProviderResponse(ok=False)`.
    """

    name = "provider"
    kind = TEXT
    requires_credential = True

    def __init__(
        self,
        api_key: str | None = None,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        prompt_suffix: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.prompt_suffix = prompt_suffix
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key) or not self.requires_credential

    def prepare_prompt(self, prompt: str) -> str:
        prompt = prompt.strip()
        if self.prompt_suffix:
            prompt = f"{prompt}, {self.prompt_suffix}"
        return prompt

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)

    async def _post_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        r = await client.post(url, json=payload, headers=headers)
        if not r.is_success:
            raise ProviderError(f"HTTP {r.status_code}: {r.text[:200]}", {"status": r.status_code})
        data = r.json()
        if not isinstance(data, dict):
            raise ProviderError("unexpected response body")
        return data

    async def _call(
        self, client: httpx.AsyncClient, prompt: str, options: Dict[str, Any]
    ) -> Tuple[Payload, Dict[str, Any]]:
        raise NotImplementedError

    def _validate(self, content: Payload) -> Optional[str]:
        if self.kind == IMAGE:
            if not isinstance(content, (bytes, bytearray)) or not content:
                return "no image bytes in response"
            return None
        if not isinstance(content, str) or not content.strip():
            return "empty completion"
        return None

    async def invoke(self, req: ProviderRequest) -> ProviderResponse:
        if not self.enabled:
            return ProviderResponse.failure(f"{self.name} disabled: missing credential")
        t0 = time.perf_counter()

        def elapsed() -> int:
            return int((time.perf_counter() - t0) * 1000)

        prompt = self.prepare_prompt(req.prompt)
        try:
            async with self._client() as client:
                content, meta = await asyncio.wait_for(
                    self._call(client, prompt, req.options), timeout=self.timeout_s
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return ProviderResponse.failure(f"timeout after {self.timeout_s:g}s", elapsed())
        except ProviderError as e:
            return ProviderResponse.failure(str(e), elapsed(), e.meta)
        except Exception as e:
            return ProviderResponse.failure(f"{type(e).__name__}: {e}", elapsed())
        problem = self._validate(content)
        if problem:
            return ProviderResponse.failure(problem, elapsed(), meta)
        if isinstance(content, str):
            content = content.strip()
        return ProviderResponse(True, content, elapsed(), meta)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} kind={self.kind!r} enabled={self.enabled}>"
