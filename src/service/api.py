from __future__ import annotations

import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from nags.config import LookupConfig
from nags.data_models import URGENCY_LEVELS, LookupRequest
from service.crypto import Base64CredentialCipher
from service.distributor_tier import DistributorTier
from service.distributors import adapter_factory
from service.escalation import ManualEscalationQueue
from service.logging_config import configure_logging, lookup_id
from service.messaging import LOOKUP_RESULTS_TOPIC, KafkaBus
from service.orchestrator import ResolutionOrchestrator
from service.parts_cache import PartsCacheTier
from service.pricing import AlgorithmicFallbackTier, OmegaPricingClient
from service.settings import ServiceSettings
from service.storage import PostgresStore, RedisCache
from service.vin import NhtsaVinClient, VehicleIdentityResolver


# ── Request / Response Models ───────────────────────────────────────

class NagsLookupRequest(BaseModel):
    vin: str = Field(min_length=1, max_length=32)
    glass_positions: list[str] = Field(default_factory=lambda: ["windshield"], min_length=1)
    transaction_id: int | None = None
    customer_name: str | None = Field(default=None, max_length=100)
    customer_phone: str | None = Field(default=None, max_length=20)
    priority: str = Field(default="normal", pattern="^(" + "|".join(URGENCY_LEVELS) + ")$")
    timeout_seconds: float | None = Field(default=None, gt=0)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


_counters: dict[str, int] = defaultdict(int)


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cfg = LookupConfig(
        distributor_priority=settings.priority_list(),
        session_ttl_seconds=settings.distributor_session_ttl_seconds,
        min_request_interval_seconds=settings.distributor_min_request_interval_seconds,
    )
    cache = RedisCache(redis_url=settings.redis_url)
    store = PostgresStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )

    resolver = VehicleIdentityResolver(
        NhtsaVinClient(cache=cache, base_url=settings.nhtsa_base_url, ttl_seconds=settings.vin_cache_ttl_seconds)
    )
    distributors = DistributorTier(
        store,
        adapter_factory(
            {"mygrant": settings.mygrant_base_url, "pilkington": settings.pilkington_base_url},
            cipher=Base64CredentialCipher(),
            config=cfg,
        ),
        config=cfg,
    )
    fallback = AlgorithmicFallbackTier(
        OmegaPricingClient(api_key=settings.omega_api_key, base_url=settings.omega_base_url),
        config=cfg,
    )
    orchestrator = ResolutionOrchestrator(
        resolver,
        distributors,
        fallback,
        ManualEscalationQueue(store, notifier=kafka),
        parts_cache=PartsCacheTier(store) if settings.parts_cache_enabled else None,
        lookup_log=store,
        config=cfg,
        default_timeout_seconds=settings.lookup_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        await kafka.connect()
        try:
            yield
        finally:
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="NAGS Lookup API", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.store = store
    app.state.kafka = kafka

    @app.middleware("http")
    async def lookup_id_middleware(request: Request, call_next: Any) -> Response:
        lid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        lookup_id.set(lid)
        response = await call_next(request)
        response.headers["X-Request-ID"] = lid
        return response

    # ── Lookup ──────────────────────────────────────────────────────

    @app.post("/nags/lookup")
    async def nags_lookup(payload: NagsLookupRequest) -> Any:
        t0 = time.monotonic()
        request = LookupRequest(
            vin=payload.vin,
            glass_positions=tuple(payload.glass_positions),
            transaction_id=payload.transaction_id,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            priority=payload.priority,
            timeout_seconds=payload.timeout_seconds,
        )
        try:
            outcome = await orchestrator.lookup(request)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

        body = outcome.to_dict()
        _counters["lookups"] += 1
        _counters["lookup_ms_total"] += int((time.monotonic() - t0) * 1000)
        for tier in outcome.resolved_tier_per_position.values():
            _counters[f"positions_{tier}"] += 1
        if outcome.error_kind:
            _counters[f"errors_{outcome.error_kind}"] += 1

        if outcome.error_kind == "escalation":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=body)
        if outcome.vehicle is not None:
            await kafka.publish(LOOKUP_RESULTS_TOPIC, body, key=outcome.vehicle.vin)
        return body

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        return {"counters": dict(_counters)}

    return app


app = create_app()
