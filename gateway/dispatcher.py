"""Generation dispatcher: validate, classify, gate, fail over, package.

Image requests: quota reservation -> image chain -> blob store -> quota commit.
A failed or interrupted image request releases its reservation, so only
successful generations are charged. Text requests are never quota-gated; if
every text provider fails the caller still gets a fixed "please retry" reply.
No exception from a provider reaches the caller.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from .blobstore import BlobStore, DataUrlBlobStore, LocalBlobStore
from .config import GatewaySettings
from .fallback import AttemptFailure, ChainExhausted, run_chain
from .intent import classify
from .providers.registry import ProviderRegistry
from .providers.types import IMAGE, TEXT, Payload
from .quota import InMemoryUsageStore, PlanTier, QuotaTracker, UsageStore, UsageStoreConflict, parse_tier

logger = logging.getLogger(__name__)

MIN_IMAGE_PROMPT_CHARS = 2

MSG_EMPTY_INPUT = "⚠️ 請輸入訊息內容。"
MSG_UNKNOWN_MODE = "⚠️ 不支援的模式，請使用 text 或 image。"
MSG_IMAGE_PROMPT_TOO_SHORT = "⚠️ 請提供清楚的圖片描述內容。"
MSG_QUOTA_DENIED = "⚠️ 今日圖片生成次數已達上限（已使用 {count}/{limit} 次），請明天再試或升級會員方案。"
MSG_QUOTA_DENIED_PENDING = "⚠️ 今日圖片生成次數已達上限（已使用 {count}/{limit} 次，另有 {pending} 張生成中），請稍後再試或升級會員方案。"
MSG_IMAGE_FAILED = "⚠️ 圖片生成失敗，請稍後再試。"
MSG_TEXT_FALLBACK = "抱歉，目前服務有點忙碌，請稍後再試一次 🙏"


class FailureKind(str, Enum):
    VALIDATION = "validation"
    QUOTA_DENIED = "quota_denied"
    CHAIN_EXHAUSTED = "chain_exhausted"
    NO_PROVIDER = "no_provider"
    STORAGE = "storage"


@dataclass(frozen=True)
class Subject:
    id: str
    tier: PlanTier = PlanTier.FREE

    def __post_init__(self) -> None:
        object.__setattr__(self, "tier", parse_tier(self.tier))


@dataclass(frozen=True)
class GenerationRequest:
    raw_text: str
    requested_mode: Optional[str] = None


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResult:
    ok: bool
    mode: Optional[str] = None
    payload: Optional[Payload] = None
    provider_used: Optional[str] = None
    image_url: Optional[str] = None
    failure: Optional[Failure] = None
    degraded: bool = False
    attempts: List[AttemptFailure] = field(default_factory=list)

    @classmethod
    def failed(cls, kind: FailureKind, message: str, mode: Optional[str] = None, **details: Any) -> "GenerationResult":
        return cls(False, mode, failure=Failure(kind, message, details))

    def to_response(self) -> Dict[str, Any]:
        if not self.ok:
            body: Dict[str, Any] = {"ok": False, "reply": self.failure.message if self.failure else MSG_IMAGE_FAILED}
            if self.failure:
                body["error"] = self.failure.kind.value
                if self.failure.kind is FailureKind.QUOTA_DENIED:
                    body["usage"] = {k: self.failure.details.get(k) for k in ("count", "pending", "limit")}
            return body
        if self.mode == IMAGE:
            return {"ok": True, "mode": IMAGE, "imageUrl": self.image_url, "engine": self.provider_used}
        return {"ok": True, "mode": TEXT, "reply": self.payload}


class GenerationDispatcher:
    def __init__(
        self,
        registry: ProviderRegistry,
        quota: QuotaTracker,
        blob_store: BlobStore | None = None,
        *,
        backoff_s: float = 0.0,
        classifier: Callable[[str], str] = classify,
    ) -> None:
        self.registry = registry
        self.quota = quota
        self.blob_store = blob_store or DataUrlBlobStore()
        self.backoff_s = backoff_s
        self.classifier = classifier

    async def handle(self, request: GenerationRequest, subject: Subject) -> GenerationResult:
        text = (request.raw_text or "").strip()
        if not text:
            return GenerationResult.failed(FailureKind.VALIDATION, MSG_EMPTY_INPUT)
        mode = request.requested_mode or self.classifier(text)
        if mode not in (TEXT, IMAGE):
            return GenerationResult.failed(FailureKind.VALIDATION, MSG_UNKNOWN_MODE, mode=mode)
        logger.debug("subject=%s mode=%s explicit=%s", subject.id, mode, bool(request.requested_mode))
        if mode == IMAGE:
            return await self._handle_image(text, subject)
        return await self._handle_text(text)

    async def _handle_text(self, prompt: str) -> GenerationResult:
        result = await run_chain(self.registry.text_chain, prompt, backoff_s=self.backoff_s)
        if isinstance(result, ChainExhausted):
            return GenerationResult(True, TEXT, MSG_TEXT_FALLBACK, degraded=True, attempts=result.failures)
        return GenerationResult(True, TEXT, result.payload, result.provider_used, attempts=result.failures)

    async def _handle_image(self, prompt: str, subject: Subject) -> GenerationResult:
        if len(prompt) < MIN_IMAGE_PROMPT_CHARS:
            return GenerationResult.failed(FailureKind.VALIDATION, MSG_IMAGE_PROMPT_TOO_SHORT, mode=IMAGE)
        try:
            decision = await self.quota.check_and_consume(subject.id, subject.tier, IMAGE)
        except UsageStoreConflict:
            logger.exception("usage store unavailable for %s", subject.id)
            return GenerationResult.failed(FailureKind.STORAGE, MSG_IMAGE_FAILED, mode=IMAGE)
        if not decision.allowed:
            template = MSG_QUOTA_DENIED_PENDING if decision.pending else MSG_QUOTA_DENIED
            return GenerationResult.failed(
                FailureKind.QUOTA_DENIED,
                template.format(count=decision.count, pending=decision.pending, limit=decision.limit),
                mode=IMAGE,
                count=decision.count,
                pending=decision.pending,
                limit=decision.limit,
            )

        charged = False
        try:
            result = await run_chain(self.registry.image_chain, prompt, backoff_s=self.backoff_s)
            if isinstance(result, ChainExhausted):
                kind = FailureKind.NO_PROVIDER if result.no_provider else FailureKind.CHAIN_EXHAUSTED
                failed = GenerationResult.failed(kind, MSG_IMAGE_FAILED, mode=IMAGE, reason=result.summary())
                failed.attempts = result.failures
                return failed
            try:
                image_url = await asyncio.to_thread(self.blob_store.save, result.payload)
            except OSError:
                logger.exception("failed to store image from %s", result.provider_used)
                return GenerationResult.failed(FailureKind.STORAGE, MSG_IMAGE_FAILED, mode=IMAGE)
            try:
                await self.quota.commit(decision)
            except UsageStoreConflict:
                logger.exception("could not record image usage for %s", subject.id)
            charged = True
            return GenerationResult(
                True, IMAGE, result.payload, result.provider_used,
                image_url=image_url, attempts=result.failures,
            )
        finally:
            if not charged:
                try:
                    await self.quota.release(decision)
                except UsageStoreConflict:
                    logger.exception("could not release quota reservation for %s", subject.id)


def build_dispatcher(
    settings: GatewaySettings,
    *,
    store: UsageStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GenerationDispatcher:
    registry = ProviderRegistry.from_settings(settings, transport=transport)
    quota = QuotaTracker(store or InMemoryUsageStore(), settings.tier_limits, timezone=settings.quota_timezone)
    if settings.blob_dir:
        blob_store: BlobStore = LocalBlobStore(
            settings.blob_dir,
            settings.blob_base_url,
            max_age_s=settings.blob_max_age_s,
            max_count=settings.blob_max_count,
        )
    else:
        blob_store = DataUrlBlobStore()
    return GenerationDispatcher(registry, quota, blob_store, backoff_s=settings.fallback_backoff_s)
