"""Session-holding adapters for distributor glass catalogs.

Each adapter owns exactly one ``DistributorSession``. ``lookup_parts`` logs in
lazily with the credential bound by the distributor tier and logs in again
when the session has expired or the portal rejects the token.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ClassVar, Mapping, Sequence

import httpx

from nags.config import LookupConfig
from nags.data_models import (
    DistributorCredential,
    DistributorSession,
    GlassPartResult,
    PartPrice,
    VehicleIdentity,
)
from nags.normalization import canonical_position, parse_features, to_cents
from service.crypto import CredentialCipher

logger = logging.getLogger(__name__)

_USER_AGENT = "Mozilla/5.0 (compatible; NagsLookup/1.0)"


class DistributorError(Exception):
    pass


class DistributorAuthError(DistributorError):
    pass


class DistributorSessionExpired(DistributorError):
    pass


class DistributorAdapter(ABC):
    name: ClassVar[str]
    default_login_path: ClassVar[str]

    def __init__(
        self,
        base_url: str,
        *,
        cipher: CredentialCipher,
        config: LookupConfig | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        cfg = config or LookupConfig()
        self.base_url = base_url.rstrip("/")
        self.cipher = cipher
        self.session_ttl = timedelta(seconds=cfg.session_ttl_seconds)
        self.min_request_interval = cfg.min_request_interval_seconds
        self.request_jitter = cfg.request_jitter_seconds
        self.feature_codes = cfg.feature_codes
        self.timeout = timeout
        self.session: DistributorSession | None = None
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._credential: DistributorCredential | None = None
        self._last_request_at: float | None = None
        self._session_lock = asyncio.Lock()
        self._pace_lock = asyncio.Lock()

    # ── Session handling ────────────────────────────────────────────

    def bind_credential(self, credential: DistributorCredential) -> None:
        """Use ``credential`` for future logins; a changed credential drops the session."""
        if self._credential is not None and self._credential != credential:
            self.session = None
        self._credential = credential

    def is_session_valid(self) -> bool:
        return self.session is not None and self.session.is_valid(self._clock())

    async def login(self, username: str, encrypted_password: str) -> DistributorSession:
        password = self.cipher.decrypt(encrypted_password)
        session = await self._authenticate(username, password)
        self.session = session
        logger.info("Logged in to %s; session valid until %s", self.name, session.expires_at.isoformat())
        return session

    async def _ensure_session(self, stale_token: str | None = None) -> DistributorSession:
        """Return a valid session, logging in at most once across concurrent callers.

        ``stale_token`` is a token the portal just rejected; it is replaced
        unless another caller already did so.
        """
        async with self._session_lock:
            session = self.session
            if session is not None and session.token != stale_token and session.is_valid(self._clock()):
                return session
            if self._credential is None:
                raise DistributorAuthError(f"{self.name}: no credential bound")
            self.session = None
            return await self.login(self._credential.username, self._credential.encrypted_password)

    # ── Lookup ──────────────────────────────────────────────────────

    async def lookup_parts(self, vehicle: VehicleIdentity, positions: Sequence[str]) -> list[GlassPartResult]:
        session = await self._ensure_session()
        await self._pace()
        try:
            items = await self._fetch_parts(vehicle, positions, session)
        except DistributorSessionExpired:
            logger.info("%s rejected session token; logging in again", self.name)
            session = await self._ensure_session(stale_token=session.token)
            await self._pace()
            items = await self._fetch_parts(vehicle, positions, session)
        return self._collect(items, positions)

    def _collect(self, items: list[dict[str, Any]], positions: Sequence[str]) -> list[GlassPartResult]:
        wanted = set(positions)
        seen: set[str] = set()
        results: list[GlassPartResult] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            part = self._parse_item(item)
            if part is None:
                logger.debug("%s: skipped unmappable entry %s", self.name, item)
                continue
            if part.glass_position not in wanted or part.glass_position in seen:
                continue
            seen.add(part.glass_position)
            results.append(part)
        return results

    async def _pace(self) -> None:
        """Keep at least ``min_request_interval`` seconds between portal requests."""
        async with self._pace_lock:
            now = time.monotonic()
            if self._last_request_at is not None and self.min_request_interval > 0:
                elapsed = now - self._last_request_at
                if elapsed < self.min_request_interval:
                    delay = self.min_request_interval - elapsed + random.uniform(0, self.request_jitter)
                    await asyncio.sleep(delay)
            self._last_request_at = time.monotonic()

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={"User-Agent": _USER_AGENT},
            **kwargs,
        )

    @property
    def login_url(self) -> str:
        if self._credential is not None and self._credential.login_url:
            return self._credential.login_url
        return f"{self.base_url}{self.default_login_path}"

    def _price(self, amount: Any) -> PartPrice | None:
        cents = to_cents(amount)
        if cents is None or cents <= 0:
            return None
        return PartPrice(cost=cents, source=self.name, as_of_date=self._clock())

    @abstractmethod
    async def _authenticate(self, username: str, password: str) -> DistributorSession: ...

    @abstractmethod
    async def _fetch_parts(
        self, vehicle: VehicleIdentity, positions: Sequence[str], session: DistributorSession
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
    def _parse_item(self, item: dict[str, Any]) -> GlassPartResult | None: ...


class MygrantAdapter(DistributorAdapter):
    """Mygrant Glass portal: bearer-token JSON API."""

    name = "mygrant"
    default_login_path = "/api/login"

    async def _authenticate(self, username: str, password: str) -> DistributorSession:
        async with self._client() as client:
            resp = await client.post(self.login_url, json={"username": username, "password": password})
            if resp.status_code in (401, 403):
                raise DistributorAuthError(f"mygrant rejected credentials for {username}")
            resp.raise_for_status()
        data = resp.json()
        token = data.get("token") or data.get("sessionToken")
        if not token:
            raise DistributorAuthError("mygrant login returned no token")
        ttl = timedelta(seconds=int(data["expiresIn"])) if data.get("expiresIn") else self.session_ttl
        return DistributorSession(token=str(token), expires_at=self._clock() + ttl)

    async def _fetch_parts(
        self, vehicle: VehicleIdentity, positions: Sequence[str], session: DistributorSession
    ) -> list[dict[str, Any]]:
        payload = {"vin": vehicle.vin, "vinPattern": vehicle.vin_pattern, "positions": list(positions)}
        async with self._client() as client:
            resp = await client.post(
                f"{self.base_url}/api/vin-lookup",
                json=payload,
                headers={"Authorization": f"Bearer {session.token}"},
            )
            if resp.status_code == 401:
                raise DistributorSessionExpired(self.name)
            resp.raise_for_status()
        data = resp.json()
        return list(data.get("parts") or [])

    def _parse_item(self, item: dict[str, Any]) -> GlassPartResult | None:
        position = canonical_position(item.get("glassType") or item.get("position"))
        number = item.get("nagsNumber") or item.get("partNumber")
        if position is None or not number:
            return None
        return GlassPartResult(
            nags_part_number=str(number),
            glass_position=position,
            features=parse_features(item.get("features") or item.get("options"), self.feature_codes),
            alternate_part_number=item.get("alternateNags") or None,
            price=self._price(item.get("price")),
        )


_PILKINGTON_LOCATIONS = {
    "WS": "windshield",
    "BL": "rear_windshield",
    "FDL": "front_driver",
    "FDR": "front_passenger",
    "RDL": "rear_driver",
    "RDR": "rear_passenger",
    "QL": "quarter_panel_left",
    "QR": "quarter_panel_right",
    "VL": "vent_left",
    "VR": "vent_right",
    "SR": "sunroof",
    "MR": "moonroof",
}
_PILKINGTON_CODES = {v: k for k, v in _PILKINGTON_LOCATIONS.items()}


class PilkingtonAdapter(DistributorAdapter):
    """Pilkington shop portal: form login, cookie session, location-coded catalog search."""

    name = "pilkington"
    default_login_path = "/auth/session"
    session_cookie = "PKSESSION"

    async def _authenticate(self, username: str, password: str) -> DistributorSession:
        async with self._client() as client:
            resp = await client.post(self.login_url, data={"username": username, "password": password})
            if resp.status_code in (401, 403):
                raise DistributorAuthError(f"pilkington rejected credentials for {username}")
            resp.raise_for_status()
        token = resp.cookies.get(self.session_cookie)
        if not token:
            raise DistributorAuthError("pilkington login set no session cookie")
        return DistributorSession(token=token, expires_at=self._clock() + self.session_ttl)

    async def _fetch_parts(
        self, vehicle: VehicleIdentity, positions: Sequence[str], session: DistributorSession
    ) -> list[dict[str, Any]]:
        codes = [_PILKINGTON_CODES[p] for p in positions if p in _PILKINGTON_CODES]
        async with self._client(cookies={self.session_cookie: session.token}) as client:
            resp = await client.get(
                f"{self.base_url}/catalog/search",
                params={"vin": vehicle.vin, "locations": ",".join(codes)},
            )
            if resp.status_code in (401, 403):
                raise DistributorSessionExpired(self.name)
            resp.raise_for_status()
        data = resp.json()
        return list(data.get("results") or [])

    def _parse_item(self, item: dict[str, Any]) -> GlassPartResult | None:
        position = _PILKINGTON_LOCATIONS.get(str(item.get("location") or "").upper())
        number = item.get("catalogNumber")
        if position is None or not number:
            return None
        return GlassPartResult(
            nags_part_number=str(number),
            glass_position=position,
            features=parse_features(item.get("options"), self.feature_codes),
            alternate_part_number=item.get("altCatalogNumber") or None,
            price=self._price(item.get("netPrice")),
        )


DISTRIBUTOR_ADAPTERS: dict[str, type[DistributorAdapter]] = {
    MygrantAdapter.name: MygrantAdapter,
    PilkingtonAdapter.name: PilkingtonAdapter,
}


def adapter_factory(
    base_urls: Mapping[str, str],
    *,
    cipher: CredentialCipher,
    config: LookupConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Callable[[str], DistributorAdapter | None]:
    """Build adapters by distributor name; ``None`` for distributors with no adapter."""

    def build(name: str) -> DistributorAdapter | None:
        adapter_cls = DISTRIBUTOR_ADAPTERS.get(name)
        base_url = base_urls.get(name)
        if adapter_cls is None or not base_url:
            return None
        return adapter_cls(base_url, cipher=cipher, config=config, transport=transport)

    return build
