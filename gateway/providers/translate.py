from __future__ import annotations
import logging
from collections import OrderedDict
from dataclasses import replace
from typing import List, Sequence

from ..fallback import ChainExhausted, run_chain
from .base import HttpProvider
from .types import ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)

TRANSLATE_INSTRUCTION = (
    "Translate the user's image description into natural English. "
    "Reply with the translation only, without quotes or commentary."
)


class PromptTranslator:
    """Translates image prompts to English through the text chain, with failover.

    One instance is shared by every wrapped image adapter, and recent
    translations are cached, so a request that falls through several image
    providers is translated once. Failed translations are not cached.
    """

    def __init__(self, chain: Sequence[HttpProvider], *, max_cached: int = 256) -> None:
        self.chain = tuple(chain)
        self.max_cached = max_cached
        self._cache: "OrderedDict[str, str]" = OrderedDict()

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.chain]

    async def translate(self, prompt: str) -> str:
        if prompt.isascii():
            return prompt
        if prompt in self._cache:
            self._cache.move_to_end(prompt)
            return self._cache[prompt]
        result = await run_chain(self.chain, prompt, {"system_prompt": TRANSLATE_INSTRUCTION, "temperature": 0})
        if isinstance(result, ChainExhausted):
            logger.warning("prompt translation failed, using original prompt: %s", result.summary())
            return prompt
        translated = str(result.payload)
        self._cache[prompt] = translated
        if len(self._cache) > self.max_cached:
            self._cache.popitem(last=False)
        return translated


class EnglishPromptProvider:
    """Wraps an image adapter so non-English prompts are machine-translated first.

    If translation fails the original prompt is used unchanged; the wrapped
    call is never failed because of it.
    """

    def __init__(self, inner: HttpProvider, translator: PromptTranslator) -> None:
        self.inner = inner
        self.translator = translator

    @property
    def name(self) -> str:
        return self.inner.name

    @property
    def kind(self) -> str:
        return self.inner.kind

    @property
    def enabled(self) -> bool:
        return self.inner.enabled

    async def invoke(self, req: ProviderRequest) -> ProviderResponse:
        translated = await self.translator.translate(req.prompt)
        resp = await self.inner.invoke(replace(req, prompt=translated))
        if translated != req.prompt:
            resp.provider_meta["translated_prompt"] = translated
        return resp

    def __repr__(self) -> str:
        return f"<EnglishPromptProvider inner={self.inner!r} translator={self.translator.names!r}>"
