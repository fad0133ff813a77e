from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .providers.types import Payload, ProviderRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptFailure:
    provider: str
    reason: str
    latency_ms: int = 0


@dataclass
class ChainSuccess:
    payload: Payload
    provider_used: str
    latency_ms: int
    provider_meta: Dict[str, Any] = field(default_factory=dict)
    failures: List[AttemptFailure] = field(default_factory=list)
    ok: bool = True


@dataclass
class ChainExhausted:
    """Every adapter failed, or the chain was empty (`failures == []`)."""

    failures: List[AttemptFailure] = field(default_factory=list)
    ok: bool = False

    @property
    def no_provider(self) -> bool:
        return not self.failures

    def summary(self) -> str:
        if self.no_provider:
            return "no provider available"
        return "; ".join(f"{f.provider}: {f.reason}" for f in self.failures)


ChainResult = Union[ChainSuccess, ChainExhausted]


async def run_chain(
    chain: Sequence[Any],
    prompt: str,
    options: Optional[Dict[str, Any]] = None,
    *,
    backoff_s: float = 0.0,
) -> ChainResult:
    """Invoke adapters strictly in order until one succeeds.

    Each call is awaited to completion before the next is tried; order is fixed
    preference, never re-ranked. `backoff_s` inserts a fixed pause between a
    failure and the next candidate (none by default).
    """
    req = ProviderRequest(prompt, dict(options or {}))
    failures: List[AttemptFailure] = []
    for i, adapter in enumerate(chain):
        if i and backoff_s > 0:
            await asyncio.sleep(backoff_s)
        try:
            resp = await adapter.invoke(req)
        except Exception as e:
            logger.exception("provider %s raised", adapter.name)
            failures.append(AttemptFailure(adapter.name, f"{type(e).__name__}: {e}"))
            continue
        if resp.ok:
            if failures:
                logger.info("%s succeeded after %d failed provider(s)", adapter.name, len(failures))
            return ChainSuccess(resp.content, adapter.name, resp.latency_ms, resp.provider_meta, failures)
        reason = resp.error or "unknown error"
        logger.warning("provider %s failed (%d ms): %s", adapter.name, resp.latency_ms, reason)
        failures.append(AttemptFailure(adapter.name, reason, resp.latency_ms))
    exhausted = ChainExhausted(failures)
    logger.error("provider chain exhausted: %s", exhausted.summary())
    return exhausted
