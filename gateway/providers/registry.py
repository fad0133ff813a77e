from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

import httpx

from ..config import ConfigError, GatewaySettings
from .base import HttpProvider
from .gemini import GeminiImageProvider, GeminiProvider
from .ollama import OllamaProvider
from .openai import GROQ_BASE_URL, OpenAIChatProvider, OpenAIImageProvider
from .sdwebui import StableDiffusionWebUIProvider
from .translate import EnglishPromptProvider, PromptTranslator
from .types import IMAGE, TEXT

logger = logging.getLogger(__name__)

Factory = Callable[[GatewaySettings, dict], HttpProvider]

TEXT_FACTORIES: Dict[str, Factory] = {
    "openai": lambda s, kw: OpenAIChatProvider(
        s.openai_api_key, name="openai", model=s.models["openai"], system_prompt=s.system_prompt, **kw
    ),
    "groq": lambda s, kw: OpenAIChatProvider(
        s.groq_api_key, name="groq", model=s.models["groq"], base_url=GROQ_BASE_URL,
        system_prompt=s.system_prompt, **kw
    ),
    "gemini": lambda s, kw: GeminiProvider(s.google_api_key, model=s.models["gemini"], **kw),
    "ollama": lambda s, kw: OllamaProvider(s.ollama_host, model=s.models["ollama"], **kw),
}

IMAGE_FACTORIES: Dict[str, Factory] = {
    "openai-image": lambda s, kw: OpenAIImageProvider(
        s.openai_api_key, model=s.models["openai-image"], prompt_suffix=s.image_style_suffix, **kw
    ),
    "gemini-image": lambda s, kw: GeminiImageProvider(
        s.google_api_key, model=s.models["gemini-image"], prompt_suffix=s.image_style_suffix, **kw
    ),
    "sd-webui": lambda s, kw: StableDiffusionWebUIProvider(
        s.sd_webui_url, prompt_suffix=s.image_style_suffix, **kw
    ),
}


@dataclass(frozen=True)
class ProviderRegistry:
    """Immutable, startup-built ordered chains of enabled adapters.

    Adapters whose credential or endpoint is missing are left out of the chain
    entirely rather than being skipped at call time.
    """

    text_chain: Tuple[HttpProvider, ...] = ()
    image_chain: Tuple[HttpProvider, ...] = ()

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ProviderRegistry":
        kw = {"timeout_s": settings.provider_timeout_s, "transport": transport}
        text_chain = _build_chain(TEXT, settings.text_chain, TEXT_FACTORIES, settings, kw)
        image_chain = _build_chain(IMAGE, settings.image_chain, IMAGE_FACTORIES, settings, kw)
        if settings.translate_image_prompts and text_chain:
            translator = PromptTranslator(text_chain)
            image_chain = [EnglishPromptProvider(p, translator) for p in image_chain]
        registry = cls(tuple(text_chain), tuple(image_chain))
        logger.info("provider chains: %s", registry.describe())
        return registry

    def chain(self, kind: str) -> Tuple[HttpProvider, ...]:
        if kind == TEXT:
            return self.text_chain
        if kind == IMAGE:
            return self.image_chain
        raise KeyError(f"Unknown provider kind: {kind}")

    def get(self, name: str) -> HttpProvider:
        for adapter in self.text_chain + self.image_chain:
            if adapter.name == name:
                return adapter
        raise KeyError(f"Unknown provider: {name}")

    def describe(self) -> Dict[str, List[str]]:
        return {
            TEXT: [p.name for p in self.text_chain],
            IMAGE: [p.name for p in self.image_chain],
        }


def _build_chain(
    kind: str,
    names: Tuple[str, ...],
    factories: Dict[str, Factory],
    settings: GatewaySettings,
    kw: dict,
) -> List[HttpProvider]:
    chain: List[HttpProvider] = []
    for name in names:
        if name not in factories:
            raise ConfigError(f"unknown {kind} provider {name!r}; expected one of {sorted(factories)}")
        adapter = factories[name](settings, kw)
        if not adapter.enabled:
            logger.info("%s provider %s not configured; left out of chain", kind, name)
            continue
        chain.append(adapter)
    return chain
