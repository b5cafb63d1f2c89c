"""Top-level NAGS resolution: decode the VIN, walk the tiers, escalate the rest.

Tiers run strictly in order (cache, distributor, fallback) and each only sees
the positions no earlier tier resolved. Whatever survives every automated
tier is queued for manual research, so each requested position ends up either
resolved or queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol, Sequence

from nags.config import TIER_CACHE, TIER_DISTRIBUTOR, TIER_FALLBACK, TIER_MANUAL, LookupConfig
from nags.data_models import (
    GlassPartResult,
    LookupOutcome,
    LookupRequest,
    TierAttempt,
    TierOutcome,
    VehicleIdentity,
)
from nags.normalization import normalize_positions, normalize_vin
from nags.resolution import merge_parts, unresolved_positions
from service.escalation import EscalationRequest, ManualEscalationQueue
from service.logging_config import bind_lookup, unbind_lookup
from service.parts_cache import PartsCacheTier
from service.storage import PostgresStore
from service.vin import VehicleIdentityResolver

logger = logging.getLogger(__name__)

MANUAL_QUEUE_SOURCE = "manual_queue"


class Tier(Protocol):
    async def lookup(self, vehicle: VehicleIdentity, positions: Sequence[str]) -> TierOutcome: ...


class ResolutionOrchestrator:
    def __init__(
        self,
        resolver: VehicleIdentityResolver,
        distributor_tier: Tier,
        fallback_tier: Tier,
        escalation_queue: ManualEscalationQueue,
        *,
        parts_cache: PartsCacheTier | None = None,
        lookup_log: PostgresStore | None = None,
        config: LookupConfig | None = None,
        default_timeout_seconds: float | None = None,
    ) -> None:
        self.resolver = resolver
        self.distributor_tier = distributor_tier
        self.fallback_tier = fallback_tier
        self.escalation_queue = escalation_queue
        self.parts_cache = parts_cache
        self.lookup_log = lookup_log
        self.config = config or LookupConfig()
        self.default_timeout_seconds = default_timeout_seconds or None

    async def lookup(self, request: LookupRequest) -> LookupOutcome:
        positions = normalize_positions(request.glass_positions, self.config)
        tokens = bind_lookup(normalize_vin(request.vin))
        try:
            return await self._run(request, positions)
        finally:
            unbind_lookup(tokens)

    async def _run(self, request: LookupRequest, positions: list[str]) -> LookupOutcome:
        start = time.monotonic()

        vehicle = await self._decode(request.vin)
        if vehicle is None:
            outcome = LookupOutcome(
                success=False,
                vehicle=None,
                total_duration_ms=_elapsed_ms(start),
                error="Invalid VIN or decode failed",
                error_kind="identity",
            )
            await self._log(request.vin, positions, outcome)
            return outcome

        timeout = request.timeout_seconds or self.default_timeout_seconds
        deadline = start + timeout if timeout else None

        resolved: dict[str, GlassPartResult] = {}
        tier_of: dict[str, str] = {}
        source_of: dict[str, str] = {}
        attempts: list[TierAttempt] = []

        tiers: list[tuple[str, Tier]] = [
            (TIER_DISTRIBUTOR, self.distributor_tier),
            (TIER_FALLBACK, self.fallback_tier),
        ]
        if self.parts_cache is not None:
            tiers.insert(0, (TIER_CACHE, self.parts_cache))

        for tier_name, tier in tiers:
            remaining = unresolved_positions(positions, resolved)
            if not remaining:
                break

            outcome = await self._invoke(tier, vehicle, remaining, deadline)
            added = merge_parts(resolved, outcome.parts, remaining)
            for pos in added:
                tier_of[pos] = tier_name
                source_of[pos] = outcome.sources.get(pos, outcome.source)
            attempts.append(
                TierAttempt(
                    tier=tier_name,
                    source=outcome.source,
                    success=bool(added),
                    positions_requested=tuple(remaining),
                    positions_resolved=tuple(added),
                    duration_ms=outcome.duration_ms,
                    error=outcome.error,
                )
            )
            logger.info("Tier %s resolved %s; still missing %s", tier_name, added, unresolved_positions(positions, resolved))

            if tier_name != TIER_CACHE and self.parts_cache is not None:
                for pos in added:
                    await self.parts_cache.remember(vehicle, [resolved[pos]], source_of[pos])
            if outcome.error == "timeout":
                break

        missing = unresolved_positions(positions, resolved)
        escalation_ids: list[str] = []
        escalation_error: str | None = None
        if missing:
            try:
                escalation_ids = await self.escalation_queue.queue_for_research(
                    EscalationRequest(
                        vin=vehicle.vin,
                        vehicle=vehicle,
                        missing_positions=missing,
                        transaction_id=request.transaction_id,
                        customer_name=request.customer_name,
                        customer_phone=request.customer_phone,
                        priority=request.priority,
                        attempt_log=attempts,
                    )
                )
            except Exception as exc:
                logger.exception("Escalation persistence failed for %s", missing)
                escalation_error = str(exc)
            else:
                for pos in missing:
                    tier_of[pos] = TIER_MANUAL
                    source_of[pos] = MANUAL_QUEUE_SOURCE

        parts = [resolved[p] for p in positions if p in resolved]
        outcome = LookupOutcome(
            success=bool(parts) and escalation_error is None,
            vehicle=vehicle,
            parts=parts,
            resolved_tier_per_position={p: tier_of[p] for p in positions if p in tier_of},
            resolved_source_per_position={p: source_of[p] for p in positions if p in source_of},
            escalated_positions=missing if escalation_error is None else [],
            escalation_ids=escalation_ids,
            attempt_log=attempts,
            total_duration_ms=_elapsed_ms(start),
            cached=bool(parts) and all(tier_of[p.glass_position] == TIER_CACHE for p in parts),
        )
        if escalation_error is not None:
            outcome.error = f"Escalation persistence failed: {escalation_error}"
            outcome.error_kind = "escalation"
        elif missing:
            outcome.error = f"Missing positions queued: {','.join(missing)}"

        await self._log(vehicle.vin, positions, outcome)
        return outcome

    async def _decode(self, vin: str) -> VehicleIdentity | None:
        try:
            return await self.resolver.decode(vin)
        except Exception as exc:
            logger.warning("VIN decode raised for %s: %s", vin, exc)
            return None

    async def _invoke(
        self,
        tier: Tier,
        vehicle: VehicleIdentity,
        positions: list[str],
        deadline: float | None,
    ) -> TierOutcome:
        t0 = time.monotonic()
        try:
            if deadline is None:
                return await tier.lookup(vehicle, positions)
            return await asyncio.wait_for(tier.lookup(vehicle, positions), timeout=max(0.0, deadline - t0))
        except TimeoutError:
            logger.warning("Lookup deadline reached during %s", type(tier).__name__)
            return TierOutcome(success=False, source="none", duration_ms=_elapsed_ms(t0), error="timeout")
        except Exception as exc:
            logger.warning("%s raised: %s", type(tier).__name__, exc)
            return TierOutcome(success=False, source="none", duration_ms=_elapsed_ms(t0), error=str(exc))

    async def _log(self, vin: str, positions: Sequence[str], outcome: LookupOutcome) -> None:
        if self.lookup_log is None:
            return
        try:
            await self.lookup_log.insert_lookup_log(
                {
                    "vin": vin,
                    "glass_positions": list(positions),
                    "resolved_tiers": outcome.resolved_tier_per_position,
                    "escalated_positions": outcome.escalated_positions,
                    "tier_durations_ms": {a.tier: a.duration_ms for a in outcome.attempt_log},
                    "total_duration_ms": outcome.total_duration_ms,
                    "success": outcome.success,
                    "cached": outcome.cached,
                    "error_message": outcome.error,
                }
            )
        except Exception as exc:
            logger.warning("Failed to write lookup log: %s", exc)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
