from __future__ import annotations
from typing import Any, Dict, List, Tuple

import httpx

from .base import HttpProvider, ProviderError, decode_image_b64
from .types import IMAGE, TEXT

GEMINI_API = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

IMAGE_PROMPT_TEMPLATE = "請生成一張圖片：「{prompt}」。請以 base64 輸出，不要附文字或說明。"


def _parts(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    candidates = data.get("candidates") or [{}]
    return (candidates[0].get("content") or {}).get("parts") or []


class _GeminiBase(HttpProvider):
    def __init__(self, api_key: str | None, *, model: str, **kwargs: Any) -> None:
        super().__init__(api_key, **kwargs)
        self.model = model

    async def _generate(self, client: httpx.AsyncClient, payload: Dict[str, Any], model: str) -> Dict[str, Any]:
        headers = {
            "x-goog-api-key": self.api_key or "",
            "Content-Type": "application/json",
        }
        return await self._post_json(client, GEMINI_API.format(model=model), payload, headers)


class GeminiProvider(_GeminiBase):
    name = "gemini"
    kind = TEXT

    def __init__(self, api_key: str | None, *, model: str = "gemini-2.0-flash", **kwargs: Any) -> None:
        super().__init__(api_key, model=model, **kwargs)

    async def _call(self, client: httpx.AsyncClient, prompt: str, options: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": prompt}],
                }
            ]
        }
        if options.get("system_prompt"):
            payload["systemInstruction"] = {"parts": [{"text": options["system_prompt"]}]}
        data = await self._generate(client, payload, options.get("model", self.model))
        texts = [p["text"] for p in _parts(data) if isinstance(p.get("text"), str)]
        if not texts:
            raise ProviderError("no completion text in response")
        return "".join(texts), {"candidates": len(data.get("candidates", []))}


class GeminiImageProvider(_GeminiBase):
    """Gemini image generation.

    The prompt is wrapped in a fixed instruction asking for base64-only output.
    Image bytes come from an `inline_data` part; a text part is accepted only when
    it decodes to a recognised image.
    """

    name = "gemini-image"
    kind = IMAGE

    def __init__(self, api_key: str | None, *, model: str = "gemini-2.0-flash-exp", **kwargs: Any) -> None:
        super().__init__(api_key, model=model, **kwargs)

    def prepare_prompt(self, prompt: str) -> str:
        return IMAGE_PROMPT_TEMPLATE.format(prompt=super().prepare_prompt(prompt))

    async def _call(self, client: httpx.AsyncClient, prompt: str, options: Dict[str, Any]) -> Tuple[bytes, Dict[str, Any]]:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        model = options.get("model", self.model)
        data = await self._generate(client, payload, model)
        for part in _parts(data):
            inline = part.get("inline_data") or part.get("inlineData")
            if inline and inline.get("data"):
                return decode_image_b64(inline["data"]), {"model": model, "source": "inline_data"}
        for part in _parts(data):
            if isinstance(part.get("text"), str) and part["text"].strip():
                return decode_image_b64(part["text"]), {"model": model, "source": "text"}
        raise ProviderError("no image content in response")
