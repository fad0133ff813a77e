"""Per-subject, per-period generation quota.

Lifecycle of a `UsageRecord` for one subject: absent until the first metered
request of a period, then counted. When the stored period key no longer matches
the current one, the record is replaced by a fresh zero count inside the same
compare-and-swap that performs the check, so a stale count can never deny the
first request of a new period.

Charging is two-phase. `check_and_consume` reserves a pending slot
(`count + pending < limit`) before any provider is called; `commit` turns the
reservation into one counted use once generation succeeded, and `release` drops
it when generation failed. A request that fails over three providers and
succeeds on the fourth is charged exactly once, and two concurrent requests at
the limit cannot both pass.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol
from zoneinfo import ZoneInfo

from .providers.types import IMAGE

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class PlanTier(str, Enum):
    FREE = "free"
    SILVER = "silver"
    GOLD = "gold"
    ADMIN = "admin"


def parse_tier(value: object) -> PlanTier:
    """Map a session-supplied tier to a `PlanTier`; unknown values become FREE."""
    if isinstance(value, PlanTier):
        return value
    try:
        return PlanTier(str(value or "").strip().lower())
    except ValueError:
        return PlanTier.FREE


@dataclass(frozen=True)
class UsageRecord:
    subject_id: str
    period_key: str
    count: int = 0
    pending: int = 0


class UsageStore(Protocol):
    async def get(self, subject_id: str) -> Optional[UsageRecord]: ...

    async def set(self, record: UsageRecord) -> None: ...

    async def compare_and_swap(
        self, subject_id: str, expected: Optional[UsageRecord], new: UsageRecord
    ) -> bool: ...


class InMemoryUsageStore:
    """Process-local store. Each method body runs without awaiting, so a
    compare-and-swap is atomic with respect to other tasks on the same loop."""

    def __init__(self, records: Iterable[UsageRecord] = ()) -> None:
        self._records: Dict[str, UsageRecord] = {r.subject_id: r for r in records}

    async def get(self, subject_id: str) -> Optional[UsageRecord]:
        return self._records.get(subject_id)

    async def set(self, record: UsageRecord) -> None:
        self._records[record.subject_id] = record

    async def compare_and_swap(
        self, subject_id: str, expected: Optional[UsageRecord], new: UsageRecord
    ) -> bool:
        if self._records.get(subject_id) != expected:
            return False
        self._records[subject_id] = new
        return True


class UsageStoreConflict(Exception):
    """The store kept rejecting compare-and-swap for one subject."""


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    subject_id: str
    tier: PlanTier
    kind: str
    period_key: str
    count: int
    limit: Optional[int]
    reserved: bool = False
    reason: str = ""
    pending: int = 0


@dataclass(frozen=True)
class UsageSnapshot:
    subject_id: str
    tier: PlanTier
    period_key: str
    used: int
    pending: int
    limit: Optional[int]

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used - self.pending)


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


class QuotaTracker:
    def __init__(
        self,
        store: UsageStore,
        tier_limits: Mapping[str, Optional[int]],
        *,
        timezone: str = "UTC",
        clock: Clock | None = None,
        metered_kinds: Iterable[str] = (IMAGE,),
        max_retries: int = 16,
    ) -> None:
        self.store = store
        self.tier_limits = {parse_tier(k): v for k, v in tier_limits.items()}
        self.tz = ZoneInfo(timezone)
        self.clock = clock or _utcnow
        self.metered_kinds = frozenset(metered_kinds)
        self.max_retries = max_retries

    def period_key(self, now: datetime | None = None) -> str:
        """Calendar day in the configured timezone, e.g. '2024-01-01'."""
        now = now or self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=dt_timezone.utc)
        return now.astimezone(self.tz).date().isoformat()

    def limit_for(self, tier: PlanTier | str) -> Optional[int]:
        tier = parse_tier(tier)
        if tier is PlanTier.ADMIN:
            return None
        return self.tier_limits.get(tier, self.tier_limits.get(PlanTier.FREE, 0))

    async def check_and_consume(
        self,
        subject_id: str,
        tier: PlanTier | str,
        kind: str = IMAGE,
        now: datetime | None = None,
    ) -> QuotaDecision:
        tier = parse_tier(tier)
        key = self.period_key(now)
        limit = self.limit_for(tier)
        if kind not in self.metered_kinds or limit is None:
            return QuotaDecision(True, subject_id, tier, kind, key, 0, limit)

        for _ in range(self.max_retries):
            current = await self.store.get(subject_id)
            base = current if current is not None and current.period_key == key else UsageRecord(subject_id, key)
            if base.count + base.pending >= limit:
                logger.info(
                    "quota denied subject=%s tier=%s period=%s used=%d pending=%d limit=%d",
                    subject_id, tier.value, key, base.count, base.pending, limit,
                )
                return QuotaDecision(
                    False, subject_id, tier, kind, key, base.count, limit,
                    reason=f"daily {kind} limit reached ({base.count} used, {base.pending} in flight, limit {limit})",
                    pending=base.pending,
                )
            reserved = replace(base, pending=base.pending + 1)
            if await self.store.compare_and_swap(subject_id, current, reserved):
                return QuotaDecision(True, subject_id, tier, kind, key, base.count, limit, reserved=True)
        raise UsageStoreConflict(f"could not reserve quota for {subject_id}")

    async def commit(self, decision: QuotaDecision) -> None:
        """Count one use for a successful generation."""
        await self._settle(decision, charge=True)

    async def release(self, decision: QuotaDecision) -> None:
        """Drop the reservation of a failed generation without charging."""
        await self._settle(decision, charge=False)

    async def _settle(self, decision: QuotaDecision, *, charge: bool) -> None:
        if not decision.reserved:
            return
        for _ in range(self.max_retries):
            current = await self.store.get(decision.subject_id)
            if current is None or current.period_key != decision.period_key:
                # Period rolled over while the request was in flight; its reservation went with it.
                logger.debug("reservation for %s in %s expired", decision.subject_id, decision.period_key)
                return
            settled = replace(
                current,
                count=current.count + (1 if charge else 0),
                pending=max(0, current.pending - 1),
            )
            if await self.store.compare_and_swap(decision.subject_id, current, settled):
                return
        raise UsageStoreConflict(f"could not settle quota for {decision.subject_id}")

    async def usage(self, subject_id: str, tier: PlanTier | str, now: datetime | None = None) -> UsageSnapshot:
        tier = parse_tier(tier)
        key = self.period_key(now)
        current = await self.store.get(subject_id)
        if current is None or current.period_key != key:
            current = UsageRecord(subject_id, key)
        return UsageSnapshot(subject_id, tier, key, current.count, current.pending, self.limit_for(tier))
