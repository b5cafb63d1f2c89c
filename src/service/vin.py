from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from nags.data_models import VehicleIdentity
from nags.normalization import is_well_formed_vin, normalize_vin
from service.storage import RedisCache

logger = logging.getLogger(__name__)


class VinDecodeSource(Protocol):
    async def decode(self, vin: str) -> dict[str, Any] | None: ...


class NhtsaVinClient:
    """VIN decode collaborator backed by NHTSA vPIC, with a Redis-backed cache.

    Returns ``None`` for anything vPIC cannot resolve to year/make/model,
    including transport errors.
    """

    def __init__(
        self,
        cache: RedisCache,
        base_url: str,
        ttl_seconds: int,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self._transport = transport

    async def decode(self, vin: str) -> dict[str, Any] | None:
        cache_key = f"vin_decode:{vin}"
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return cached

        try:
            url = f"{self.base_url}/DecodeVinValues/{vin}"
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url, params={"format": "json"})
                resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("NHTSA VIN decode failed for %s: %s", vin, exc)
            return None

        row = (payload.get("Results") or [{}])[0]
        try:
            year = int(row.get("ModelYear") or 0)
        except (TypeError, ValueError):
            year = 0
        decoded = {
            "vin": vin,
            "model_year": year,
            "make": (row.get("Make") or "").strip(),
            "model": (row.get("Model") or "").strip(),
            "trim": (row.get("Trim") or "").strip() or None,
            "body_class": (row.get("BodyClass") or "").strip() or None,
            "decode_source": "nhtsa",
        }
        if not (decoded["model_year"] and decoded["make"] and decoded["model"]):
            logger.info("NHTSA could not decode %s (ErrorCode=%s)", vin, row.get("ErrorCode"))
            return None

        await self.cache.set_json(cache_key, decoded, ttl_seconds=self.ttl_seconds)
        return decoded


class VehicleIdentityResolver:
    def __init__(self, source: VinDecodeSource) -> None:
        self.source = source

    async def decode(self, vin: str) -> VehicleIdentity | None:
        normalized = normalize_vin(vin)
        if not is_well_formed_vin(normalized):
            logger.info("Rejected malformed VIN %r", vin)
            return None

        details = await self.source.decode(normalized)
        if not details:
            return None
        year = int(details.get("model_year") or 0)
        make = details.get("make") or ""
        model = details.get("model") or ""
        if not (year and make and model):
            return None

        return VehicleIdentity(
            vin=normalized,
            year=year,
            make=make,
            model=model,
            trim=details.get("trim") or None,
            body_style=details.get("body_class") or None,
        )
