from __future__ import annotations

import logging
import time
from typing import Sequence

from nags.config import TIER_CACHE
from nags.data_models import GlassPartResult, TierOutcome, VehicleIdentity
from service.storage import PostgresStore

logger = logging.getLogger(__name__)


class PartsCacheTier:
    """Previously resolved parts keyed by VIN pattern and glass position."""

    def __init__(self, store: PostgresStore) -> None:
        self.store = store

    async def lookup(self, vehicle: VehicleIdentity, positions: Sequence[str]) -> TierOutcome:
        start = time.monotonic()
        parts: list[GlassPartResult] = []
        for position in positions:
            part = await self.store.get_cached_part(vehicle.vin_pattern, position)
            if part is not None:
                parts.append(part)
        return TierOutcome(
            success=bool(parts),
            source=TIER_CACHE,
            parts=parts,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    async def remember(self, vehicle: VehicleIdentity, parts: Sequence[GlassPartResult], source: str) -> None:
        for part in parts:
            try:
                await self.store.upsert_cached_part(vehicle, part, source)
            except Exception as exc:
                logger.warning("Failed to cache %s for %s: %s", part.glass_position, vehicle.vin_pattern, exc)
