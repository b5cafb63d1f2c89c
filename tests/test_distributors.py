import asyncio
import json
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from nags.config import LookupConfig
from nags.data_models import DistributorCredential, VehicleIdentity
from service.crypto import Base64CredentialCipher, CredentialDecryptError
from service.distributors import (
    DistributorAuthError,
    DistributorSessionExpired,
    MygrantAdapter,
    PilkingtonAdapter,
    adapter_factory,
)

VIN = "1HGCM82633A004352"
CIPHER = Base64CredentialCipher()
NO_PACING = LookupConfig(min_request_interval_seconds=0.0, request_jitter_seconds=0.0)


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def vehicle():
    return VehicleIdentity(vin=VIN, year=2003, make="HONDA", model="Accord")


def _credential(name="mygrant", password="s3cret", login_url=""):
    return DistributorCredential(
        distributor_name=name,
        login_url=login_url,
        username="shop-42",
        encrypted_password=CIPHER.encrypt(password),
    )


def _mygrant_transport(calls, parts, *, reject_lookups=0):
    state = {"rejections": reject_lookups, "logins": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path == "/api/login":
            state["logins"] += 1
            body = json.loads(request.content)
            if body["password"] != "s3cret":
                return httpx.Response(401)
            return httpx.Response(200, json={"token": f"tok-{state['logins']}"})
        if request.url.path == "/api/vin-lookup":
            if state["rejections"] > 0:
                state["rejections"] -= 1
                return httpx.Response(401)
            return httpx.Response(200, json={"parts": parts})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


MYGRANT_PARTS = [
    {
        "nagsNumber": "FW02345GTY",
        "glassType": "Windshield",
        "features": "RS, ADAS, XYZ",
        "alternateNags": "FW02345GTN",
        "price": 45.50,
    },
    {"partNumber": "FB23456YPY", "position": "back glass", "price": "120.00"},
    {"nagsNumber": "FD11111", "glassType": "Trunk"},
]


# ── Mygrant ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_login_decrypts_stored_password():
    calls = []
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport(calls, []))
    await adapter.login("shop-42", CIPHER.encrypt("s3cret"))
    assert adapter.is_session_valid()
    assert json.loads(calls[0].content) == {"username": "shop-42", "password": "s3cret"}


@pytest.mark.asyncio
async def test_login_rejected_raises_auth_error():
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport([], []))
    with pytest.raises(DistributorAuthError):
        await adapter.login("shop-42", CIPHER.encrypt("wrong"))
    assert adapter.session is None


@pytest.mark.asyncio
async def test_login_with_undecodable_password():
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport([], []))
    with pytest.raises(CredentialDecryptError):
        await adapter.login("shop-42", "not base64 !!")


@pytest.mark.asyncio
async def test_lookup_logs_in_lazily_and_parses_requested_positions(vehicle):
    calls = []
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport(calls, MYGRANT_PARTS))
    adapter.bind_credential(_credential())

    parts = await adapter.lookup_parts(vehicle, ["windshield"])

    assert [c.url.path for c in calls] == ["/api/login", "/api/vin-lookup"]
    assert calls[1].headers["Authorization"] == "Bearer tok-1"
    assert json.loads(calls[1].content)["vinPattern"] == "1HGCM82633A"
    assert len(parts) == 1
    part = parts[0]
    assert part.nags_part_number == "FW02345GTY"
    assert part.alternate_part_number == "FW02345GTN"
    assert part.features == {"rain_sensor", "adas", "xyz"}
    assert part.price.cost == 4550
    assert part.price.source == "mygrant"


@pytest.mark.asyncio
async def test_lookup_maps_position_aliases(vehicle):
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport([], MYGRANT_PARTS))
    adapter.bind_credential(_credential())
    parts = await adapter.lookup_parts(vehicle, ["windshield", "rear_windshield"])
    by_pos = {p.glass_position: p for p in parts}
    assert set(by_pos) == {"windshield", "rear_windshield"}
    assert by_pos["rear_windshield"].price.cost == 12000


@pytest.mark.asyncio
async def test_session_is_reused_until_expiry(vehicle):
    calls = []
    clock = Clock()
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport(calls, MYGRANT_PARTS), clock=clock)
    adapter.bind_credential(_credential())

    await adapter.lookup_parts(vehicle, ["windshield"])
    clock.now += timedelta(hours=1)
    await adapter.lookup_parts(vehicle, ["windshield"])
    assert [c.url.path for c in calls].count("/api/login") == 1

    clock.now += timedelta(hours=4)
    assert not adapter.is_session_valid()
    await adapter.lookup_parts(vehicle, ["windshield"])
    assert [c.url.path for c in calls].count("/api/login") == 2


@pytest.mark.asyncio
async def test_rejected_token_triggers_one_relogin(vehicle):
    calls = []
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport(calls, MYGRANT_PARTS, reject_lookups=1))
    adapter.bind_credential(_credential())

    parts = await adapter.lookup_parts(vehicle, ["windshield"])

    assert [c.url.path for c in calls] == ["/api/login", "/api/vin-lookup", "/api/login", "/api/vin-lookup"]
    assert calls[3].headers["Authorization"] == "Bearer tok-2"
    assert parts[0].nags_part_number == "FW02345GTY"


@pytest.mark.asyncio
async def test_repeated_rejection_propagates(vehicle):
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport([], MYGRANT_PARTS, reject_lookups=5))
    adapter.bind_credential(_credential())
    with pytest.raises(DistributorSessionExpired):
        await adapter.lookup_parts(vehicle, ["windshield"])


@pytest.mark.asyncio
async def test_lookup_without_credential_raises(vehicle):
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport([], []))
    with pytest.raises(DistributorAuthError):
        await adapter.lookup_parts(vehicle, ["windshield"])


@pytest.mark.asyncio
async def test_changed_credential_drops_session():
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport([], []))
    adapter.bind_credential(_credential())
    await adapter.login("shop-42", CIPHER.encrypt("s3cret"))
    adapter.bind_credential(_credential())
    assert adapter.is_session_valid()
    adapter.bind_credential(_credential(password="rotated"))
    assert adapter.session is None


@pytest.mark.asyncio
async def test_credential_login_url_overrides_default():
    calls = []
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_mygrant_transport(calls, []))
    adapter.bind_credential(_credential(login_url="https://sso.mygrant.test/api/login"))
    await adapter.login("shop-42", CIPHER.encrypt("s3cret"))
    assert calls[0].url.host == "sso.mygrant.test"


# ── Pilkington ──────────────────────────────────────────────────────


def _pilkington_transport(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path == "/auth/session":
            form = parse_qs(request.content.decode())
            if form.get("password") != ["s3cret"]:
                return httpx.Response(403)
            return httpx.Response(200, headers={"set-cookie": "PKSESSION=abc123; Path=/"}, json={"ok": True})
        if request.url.path == "/catalog/search":
            if "PKSESSION=abc123" not in request.headers.get("cookie", ""):
                return httpx.Response(401)
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"location": "WS", "catalogNumber": "FW04567", "options": ["HUD", "HTD"], "netPrice": "$45.50"},
                        {"location": "BL", "catalogNumber": "FB04567", "altCatalogNumber": "FB04568", "netPrice": "0"},
                        {"location": "ZZ", "catalogNumber": "FX00000"},
                    ]
                },
            )
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_pilkington_cookie_session_and_location_codes(vehicle):
    calls = []
    adapter = PilkingtonAdapter("https://pilkington.test", cipher=CIPHER, config=NO_PACING,
                                transport=_pilkington_transport(calls))
    adapter.bind_credential(_credential(name="pilkington"))

    parts = await adapter.lookup_parts(vehicle, ["windshield", "rear_windshield"])

    search = calls[1]
    assert search.url.params["locations"] == "WS,BL"
    assert search.url.params["vin"] == VIN
    by_pos = {p.glass_position: p for p in parts}
    assert by_pos["windshield"].features == {"hud", "heated"}
    assert by_pos["windshield"].price.cost == 4550
    assert by_pos["rear_windshield"].alternate_part_number == "FB04568"
    assert by_pos["rear_windshield"].price is None


@pytest.mark.asyncio
async def test_pilkington_rejects_bad_password():
    adapter = PilkingtonAdapter("https://pilkington.test", cipher=CIPHER, config=NO_PACING,
                                transport=_pilkington_transport([]))
    with pytest.raises(DistributorAuthError):
        await adapter.login("shop-42", CIPHER.encrypt("nope"))


def test_adapter_factory_builds_known_distributors_only():
    build = adapter_factory(
        {"mygrant": "https://mygrant.test", "pilkington": "https://pilkington.test", "igc": "https://igc.test"},
        cipher=CIPHER,
    )
    assert isinstance(build("mygrant"), MygrantAdapter)
    assert isinstance(build("pilkington"), PilkingtonAdapter)
    assert build("igc") is None
    assert build("pgw") is None


# ── Concurrency ─────────────────────────────────────────────────────


def _slow_login_transport(state, *, login_delay=0.05):
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/login":
            state["logins"] += 1
            await asyncio.sleep(login_delay)
            return httpx.Response(200, json={"token": f"tok-{state['logins']}"})
        state["lookups"].append(time.monotonic())
        return httpx.Response(200, json={"parts": MYGRANT_PARTS})

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_login(vehicle):
    state = {"logins": 0, "lookups": []}
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=NO_PACING,
                             transport=_slow_login_transport(state))
    adapter.bind_credential(_credential())

    first, second = await asyncio.gather(
        adapter.lookup_parts(vehicle, ["windshield"]),
        adapter.lookup_parts(vehicle, ["windshield"]),
    )

    assert state["logins"] == 1
    assert first[0].nags_part_number == second[0].nags_part_number == "FW02345GTY"


@pytest.mark.asyncio
async def test_concurrent_lookups_respect_request_interval(vehicle):
    state = {"logins": 0, "lookups": []}
    paced = LookupConfig(min_request_interval_seconds=0.1, request_jitter_seconds=0.0)
    adapter = MygrantAdapter("https://mygrant.test", cipher=CIPHER, config=paced,
                             transport=_slow_login_transport(state, login_delay=0.0))
    adapter.bind_credential(_credential())

    await asyncio.gather(*(adapter.lookup_parts(vehicle, ["windshield"]) for _ in range(3)))

    stamps = sorted(state["lookups"])
    assert len(stamps) == 3
    assert all(b - a >= 0.09 for a, b in zip(stamps, stamps[1:]))
