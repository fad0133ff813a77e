import asyncio
import base64
import json

import httpx
import pytest

from gateway.providers.gemini import GeminiImageProvider, GeminiProvider
from gateway.providers.ollama import OllamaProvider
from gateway.providers.openai import OpenAIChatProvider, OpenAIImageProvider
from gateway.providers.sdwebui import StableDiffusionWebUIProvider
from gateway.providers.translate import EnglishPromptProvider, PromptTranslator
from gateway.providers.types import ProviderRequest, ProviderResponse

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00fake-image-body"
PNG_B64 = base64.b64encode(PNG).decode("ascii")


def transport(status=200, body=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=body if body is not None else {})
    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_openai_chat_success_and_auth_header():
    seen = []
    p = OpenAIChatProvider("sk-test", system_prompt="be brief", transport=transport(body={
        "model": "gpt-4o-mini",
        "choices": [{"message": {"content": "  hello there \n"}}],
    }, seen=seen))
    resp = await p.invoke(ProviderRequest("hi"))
    assert resp.ok
    assert resp.content == "hello there"
    assert resp.provider_meta["model"] == "gpt-4o-mini"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    sent = json.loads(seen[0].content)
    assert sent["messages"][0] == {"role": "system", "content": "be brief"}
    assert sent["messages"][-1] == {"role": "user", "content": "hi"}


@pytest.mark.asyncio
async def test_non_2xx_is_a_typed_failure():
    p = OpenAIChatProvider("sk-test", transport=transport(status=429, body={"error": "rate limited"}))
    resp = await p.invoke(ProviderRequest("hi"))
    assert not resp.ok
    assert resp.error.startswith("HTTP 429")
    assert resp.provider_meta == {"status": 429}


@pytest.mark.asyncio
async def test_missing_completion_field_is_failure():
    p = OpenAIChatProvider("sk-test", transport=transport(body={"choices": []}))
    resp = await p.invoke(ProviderRequest("hi"))
    assert not resp.ok
    assert "no completion" in resp.error


@pytest.mark.asyncio
async def test_disabled_without_key():
    p = OpenAIChatProvider(None)
    assert not p.enabled
    resp = await p.invoke(ProviderRequest("hi"))
    assert not resp.ok
    assert "disabled" in resp.error


@pytest.mark.asyncio
async def test_transport_timeout_is_failure():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    p = OpenAIChatProvider("sk-test", timeout_s=5, transport=httpx.MockTransport(handler))
    resp = await p.invoke(ProviderRequest("hi"))
    assert not resp.ok
    assert resp.error == "timeout after 5s"


@pytest.mark.asyncio
async def test_overall_deadline_aborts_slow_call():
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={"choices": [{"message": {"content": "late"}}]})

    p = OpenAIChatProvider("sk-test", timeout_s=0.05, transport=httpx.MockTransport(handler))
    resp = await p.invoke(ProviderRequest("hi"))
    assert not resp.ok
    assert resp.error == "timeout after 0.05s"


@pytest.mark.asyncio
async def test_connection_error_never_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    p = OpenAIChatProvider("sk-test", transport=httpx.MockTransport(handler))
    resp = await p.invoke(ProviderRequest("hi"))
    assert not resp.ok
    assert "ConnectError" in resp.error


@pytest.mark.asyncio
async def test_gemini_text_joins_parts():
    seen = []
    p = GeminiProvider("g-key", transport=transport(body={
        "candidates": [{"content": {"parts": [{"text": "光合作用是"}, {"text": "植物的過程"}]}}],
    }, seen=seen))
    resp = await p.invoke(ProviderRequest("什麼是光合作用"))
    assert resp.ok
    assert resp.content == "光合作用是植物的過程"
    assert seen[0].headers["x-goog-api-key"] == "g-key"
    assert "gemini-2.0-flash:generateContent" in str(seen[0].url)


@pytest.mark.asyncio
async def test_gemini_image_wraps_prompt_and_reads_inline_data():
    seen = []
    p = GeminiImageProvider("g-key", transport=transport(body={
        "candidates": [{"content": {"parts": [{"text": "here"}, {"inlineData": {"mimeType": "image/png", "data": PNG_B64}}]}}],
    }, seen=seen))
    resp = await p.invoke(ProviderRequest("一隻貓"))
    assert resp.ok
    assert resp.content == PNG
    sent = json.loads(seen[0].content)
    assert sent["contents"][0]["parts"][0]["text"] == "請生成一張圖片：「一隻貓」。請以 base64 輸出，不要附文字或說明。"


@pytest.mark.asyncio
async def test_gemini_image_accepts_base64_text_part():
    p = GeminiImageProvider("g-key", transport=transport(body={
        "candidates": [{"content": {"parts": [{"text": PNG_B64}]}}],
    }))
    resp = await p.invoke(ProviderRequest("a cat"))
    assert resp.ok
    assert resp.content == PNG


@pytest.mark.asyncio
async def test_gemini_image_rejects_plain_text_answer():
    p = GeminiImageProvider("g-key", transport=transport(body={
        "candidates": [{"content": {"parts": [{"text": "Sorry, I cannot draw that."}]}}],
    }))
    resp = await p.invoke(ProviderRequest("a cat"))
    assert not resp.ok
    assert "base64" in resp.error


@pytest.mark.asyncio
async def test_openai_image_decodes_b64_and_applies_style_suffix():
    seen = []
    p = OpenAIImageProvider("sk-test", prompt_suffix="watercolor style", transport=transport(body={
        "data": [{"b64_json": PNG_B64, "revised_prompt": "a cat, watercolor"}],
    }, seen=seen))
    resp = await p.invoke(ProviderRequest(" a cat "))
    assert resp.ok
    assert resp.content == PNG
    sent = json.loads(seen[0].content)
    assert sent["prompt"] == "a cat, watercolor style"
    assert sent["response_format"] == "b64_json"


@pytest.mark.asyncio
async def test_openai_image_without_data_is_failure():
    p = OpenAIImageProvider("sk-test", transport=transport(body={"data": []}))
    resp = await p.invoke(ProviderRequest("a cat"))
    assert not resp.ok
    assert resp.error == "no image data in response"


@pytest.mark.asyncio
async def test_sd_webui_needs_only_url():
    assert not StableDiffusionWebUIProvider(None).enabled
    seen = []
    p = StableDiffusionWebUIProvider("http://sd.local:7860/", transport=transport(body={"images": [PNG_B64]}, seen=seen))
    assert p.enabled
    resp = await p.invoke(ProviderRequest("a cat"))
    assert resp.ok
    assert resp.content == PNG
    assert str(seen[0].url) == "http://sd.local:7860/sdapi/v1/txt2img"


@pytest.mark.asyncio
async def test_ollama_enabled_only_with_host():
    assert not OllamaProvider(None).enabled
    p = OllamaProvider("http://localhost:11434", transport=transport(body={"message": {"content": "hey"}, "eval_count": 3}))
    resp = await p.invoke(ProviderRequest("hi"))
    assert resp.ok
    assert resp.content == "hey"
    assert resp.provider_meta["eval_count"] == 3


class FakeTranslator:
    name = "translator"
    kind = "text"
    enabled = True

    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    async def invoke(self, req):
        self.calls.append(req)
        if self.ok:
            return ProviderResponse(True, "a cat under the moon", 1, {})
        return ProviderResponse.failure("down")


@pytest.mark.asyncio
async def test_english_prompt_wrapper_translates_non_ascii():
    seen = []
    inner = OpenAIImageProvider("sk-test", transport=transport(body={"data": [{"b64_json": PNG_B64}]}, seen=seen))
    translator = FakeTranslator()
    p = EnglishPromptProvider(inner, PromptTranslator([translator]))
    assert p.name == "openai-image" and p.kind == "image"
    resp = await p.invoke(ProviderRequest("月亮下的貓"))
    assert resp.ok
    assert json.loads(seen[0].content)["prompt"] == "a cat under the moon"
    assert resp.provider_meta["translated_prompt"] == "a cat under the moon"


@pytest.mark.asyncio
async def test_english_prompt_wrapper_skips_ascii_and_survives_translation_failure():
    seen = []
    inner = OpenAIImageProvider("sk-test", transport=transport(body={"data": [{"b64_json": PNG_B64}]}, seen=seen))
    translator = FakeTranslator(ok=False)
    p = EnglishPromptProvider(inner, PromptTranslator([translator]))
    await p.invoke(ProviderRequest("a cat"))
    assert translator.calls == []
    resp = await p.invoke(ProviderRequest("月亮下的貓"))
    assert resp.ok
    assert json.loads(seen[1].content)["prompt"] == "月亮下的貓"


class CountingImage:
    kind = "image"
    enabled = True

    def __init__(self, name, ok):
        self.name = name
        self.ok = ok
        self.prompts = []

    async def invoke(self, req):
        self.prompts.append(req.prompt)
        if self.ok:
            return ProviderResponse(True, b"img", 1, {})
        return ProviderResponse.failure("busy")


@pytest.mark.asyncio
async def test_shared_translator_fails_over_and_translates_once_per_prompt():
    down, up = FakeTranslator(ok=False), FakeTranslator()
    translator = PromptTranslator([down, up])
    a, b = CountingImage("a", ok=False), CountingImage("b", ok=True)
    chain = [EnglishPromptProvider(a, translator), EnglishPromptProvider(b, translator)]
    for adapter in chain:
        await adapter.invoke(ProviderRequest("月亮下的貓"))
    assert len(down.calls) == 1 and len(up.calls) == 1
    assert a.prompts == b.prompts == ["a cat under the moon"]
