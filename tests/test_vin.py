import httpx
import pytest

from service.storage import RedisCache
from service.vin import NhtsaVinClient, VehicleIdentityResolver

VIN = "1HGCM82633A004352"


class FakeSource:
    def __init__(self, details):
        self.details = details
        self.calls = []

    async def decode(self, vin):
        self.calls.append(vin)
        return self.details


ACCORD = {"vin": VIN, "model_year": 2003, "make": "HONDA", "model": "Accord", "trim": "EX", "body_class": "Sedan"}


def _nhtsa(results, calls):
    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"Results": results})

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_resolver_normalizes_and_builds_identity():
    source = FakeSource(ACCORD)
    vehicle = await VehicleIdentityResolver(source).decode(" 1hgcm82633a004352 ")

    assert source.calls == [VIN]
    assert vehicle.vin == VIN
    assert vehicle.vin_pattern == "1HGCM82633A"
    assert (vehicle.year, vehicle.make, vehicle.model, vehicle.trim, vehicle.body_style) == (
        2003, "HONDA", "Accord", "EX", "Sedan",
    )


@pytest.mark.asyncio
async def test_resolver_rejects_malformed_vin_without_calling_source():
    source = FakeSource(ACCORD)
    assert await VehicleIdentityResolver(source).decode("1HGCM82633A00435") is None
    assert await VehicleIdentityResolver(source).decode("1HGCM82633A00435O") is None
    assert source.calls == []


@pytest.mark.asyncio
async def test_resolver_returns_none_when_source_cannot_decode():
    assert await VehicleIdentityResolver(FakeSource(None)).decode(VIN) is None
    assert await VehicleIdentityResolver(FakeSource({**ACCORD, "make": ""})).decode(VIN) is None


@pytest.mark.asyncio
async def test_nhtsa_client_decodes_and_caches():
    calls = []
    row = {"ModelYear": "2003", "Make": "HONDA", "Model": "Accord", "Trim": "EX", "BodyClass": "Sedan", "ErrorCode": "0"}
    client = NhtsaVinClient(RedisCache("redis://localhost:65535/0"), "https://vpic.test/api/vehicles", 60,
                            transport=_nhtsa([row], calls))

    first = await client.decode(VIN)
    second = await client.decode(VIN)

    assert first == second
    assert first["model_year"] == 2003
    assert first["decode_source"] == "nhtsa"
    assert len(calls) == 1
    assert calls[0].url.path == f"/api/vehicles/DecodeVinValues/{VIN}"
    assert calls[0].url.params["format"] == "json"


@pytest.mark.asyncio
async def test_nhtsa_client_does_not_cache_failed_decodes():
    calls = []
    row = {"ModelYear": "", "Make": "", "Model": "", "ErrorCode": "11"}
    client = NhtsaVinClient(RedisCache("redis://localhost:65535/0"), "https://vpic.test", 60,
                            transport=_nhtsa([row], calls))
    assert await client.decode(VIN) is None
    assert await client.decode(VIN) is None
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_nhtsa_transport_error_returns_none():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = NhtsaVinClient(RedisCache("redis://localhost:65535/0"), "https://vpic.test", 60,
                            transport=httpx.MockTransport(handler))
    assert await client.decode(VIN) is None
