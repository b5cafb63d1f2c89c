from __future__ import annotations

import logging
import time
from typing import Any, Protocol, Sequence

import httpx

from nags.config import LookupConfig
from nags.data_models import GlassPartResult, PartPrice, TierOutcome, VehicleIdentity
from nags.normalization import canonical_position, to_cents

logger = logging.getLogger(__name__)

OMEGA_SOURCE = "omega"


class PricingEngine(Protocol):
    async def generate_pricing(self, vin: str) -> dict[str, Any]: ...


class OmegaPricingClient:
    """Async client for the Omega EDI pricing-profile API.

    Returns ``{"success": bool, "breakdown": {"parts": [...]}}``. Transport and
    HTTP errors are raised to the caller.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://app.omegaedi.com/api/2.0",
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._enabled = bool(api_key)

    async def generate_pricing(self, vin: str) -> dict[str, Any]:
        if not self._enabled:
            return {"success": False, "breakdown": {"parts": []}, "message": "omega_not_configured"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(
                f"{self.base_url}/pricing",
                json={"vin": vin},
                headers={"X-API-Key": self.api_key, "Accept": "application/json"},
            )
            resp.raise_for_status()
        return resp.json()


class AlgorithmicFallbackTier:
    """Derives approximate parts and prices from the pricing engine; never scrapes."""

    def __init__(self, engine: PricingEngine, config: LookupConfig | None = None) -> None:
        self.engine = engine
        self.default_position = (config or LookupConfig()).fallback_default_position

    async def lookup(self, vehicle: VehicleIdentity, positions: Sequence[str]) -> TierOutcome:
        start = time.monotonic()
        try:
            pricing = await self.engine.generate_pricing(vehicle.vin)
        except Exception as exc:
            logger.warning("Pricing derivation failed for %s: %s", vehicle.vin, exc)
            return TierOutcome(
                success=False,
                source=OMEGA_SOURCE,
                duration_ms=int((time.monotonic() - start) * 1000),
                error=str(exc),
            )

        breakdown = pricing.get("breakdown") if isinstance(pricing, dict) else None
        if not isinstance(pricing, dict) or not isinstance(breakdown or {}, dict):
            logger.warning("Malformed pricing response for %s: %r", vehicle.vin, pricing)
            return TierOutcome(
                success=False,
                source=OMEGA_SOURCE,
                duration_ms=int((time.monotonic() - start) * 1000),
                error=f"malformed pricing response ({type(pricing).__name__})",
            )

        parts: list[GlassPartResult] = []
        items = (breakdown or {}).get("parts")
        if pricing.get("success") and isinstance(items, list):
            parts = [self._to_part(item) for item in items if isinstance(item, dict)]

        logger.info(
            "Pricing engine returned %d line item(s) for %s (wanted %s)",
            len(parts), vehicle.vin, list(positions),
        )
        return TierOutcome(
            success=bool(parts),
            source=OMEGA_SOURCE,
            parts=parts,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    def _to_part(self, item: dict[str, Any]) -> GlassPartResult:
        raw_position = item.get("glassType")
        if raw_position:
            position = canonical_position(raw_position) or str(raw_position).strip().lower()
        else:
            # Unlabelled line items are attributed to the windshield.
            logger.debug("Pricing item %s has no glassType; assuming %s", item, self.default_position)
            position = self.default_position

        amount = item.get("price") or item.get("cost") or 0
        cents = to_cents(amount)
        return GlassPartResult(
            nags_part_number=item.get("nagsNumber") or str(item.get("partNumber") or ""),
            glass_position=position,
            price=PartPrice(cost=cents or 0, source=OMEGA_SOURCE),
        )
