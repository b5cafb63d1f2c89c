from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, MetaData, String, Table, Text, insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from nags.data_models import (
    DistributorCredential,
    EscalationRecord,
    GlassPartResult,
    PartPrice,
    VehicleIdentity,
)


metadata = MetaData()

distributor_credentials_table = Table(
    "distributor_credentials",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("distributor", String(30), nullable=False, index=True),
    Column("login_url", String(255), nullable=False),
    Column("username", String(100), nullable=False),
    Column("password_encrypted", String(255), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_success_at", DateTime(timezone=True), nullable=True),
    Column("last_failure_at", DateTime(timezone=True), nullable=True),
    Column("failure_count", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

manual_queue_table = Table(
    "nags_manual_queue",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vin", String(17), nullable=False, index=True),
    Column("glass_position", String(30), nullable=False),
    Column("year", Integer, nullable=True),
    Column("make", String(50), nullable=True),
    Column("model", String(50), nullable=True),
    Column("transaction_id", Integer, nullable=True),
    Column("customer_name", String(100), nullable=True),
    Column("customer_phone", String(20), nullable=True),
    Column("urgency", String(20), nullable=False, default="normal"),
    Column("attempt_log", JSON, nullable=False, default=list),
    Column("status", String(20), nullable=False, default="pending"),
    Column("resolved_nags_number", String(20), nullable=True),
    Column("resolution_notes", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

parts_cache_table = Table(
    "nags_cache",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vin_pattern", String(11), nullable=False, index=True),
    Column("year", Integer, nullable=False),
    Column("make", String(50), nullable=False),
    Column("model", String(50), nullable=False),
    Column("trim", String(50), nullable=True),
    Column("body_style", String(50), nullable=True),
    Column("glass_position", String(30), nullable=False),
    Column("nags_part_number", String(20), nullable=False),
    Column("nags_part_number_alt", String(20), nullable=True),
    Column("features", JSON, nullable=False, default=list),
    Column("last_known_cost", Integer, nullable=True),
    Column("last_price_date", DateTime(timezone=True), nullable=True),
    Column("price_source", String(30), nullable=True),
    Column("source", String(30), nullable=False),
    Column("lookup_count", Integer, nullable=False, default=0),
    Column("last_lookup_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

lookup_log_table = Table(
    "nags_lookup_log",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vin", String(17), nullable=False, index=True),
    Column("glass_positions", String(255), nullable=False),
    Column("resolved_tiers", JSON, nullable=False, default=dict),
    Column("escalated_positions", JSON, nullable=False, default=list),
    Column("tier_durations_ms", JSON, nullable=False, default=dict),
    Column("total_duration_ms", Integer, nullable=False),
    Column("success", Boolean, nullable=False),
    Column("cached", Boolean, nullable=False, default=False),
    Column("error_message", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


class RedisCache:
    """JSON cache on Redis; keeps entries in process memory when Redis is unreachable."""

    def __init__(self, redis_url: str, namespace: str = "nags") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, tuple[float, str]] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                return None
        entry = self._mem.get(full_key)
        if entry is None:
            return None
        expires_at, raw = entry
        if time.monotonic() > expires_at:
            del self._mem[full_key]
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                pass
        self._mem[full_key] = (time.monotonic() + ttl_seconds, payload)


class StorageUnavailableError(RuntimeError):
    """The database is unreachable and the operation must not fall back to memory."""


class PostgresStore:
    """Credential store, escalation queue, parts cache and lookup log.

    When the database cannot be reached at connect time the store keeps
    credentials, cached parts and the lookup log in process memory so the
    service still runs in development. Escalations are never held in memory:
    without a database they raise ``StorageUnavailableError``.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_credentials: list[dict[str, Any]] = []
        self._mem_parts_cache: list[dict[str, Any]] = []
        self._mem_lookup_log: list[dict[str, Any]] = []

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None:
            return False
        if self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Distributor credentials ─────────────────────────────────────

    async def add_distributor_credential(self, credential: DistributorCredential) -> str:
        row_id = str(uuid4())
        row = {
            "id": row_id,
            "distributor": credential.distributor_name.lower(),
            "login_url": credential.login_url,
            "username": credential.username,
            "password_encrypted": credential.encrypted_password,
            "is_active": credential.is_active,
            "failure_count": 0,
            "created_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            self._mem_credentials.append(row)
            return row_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(distributor_credentials_table).values(**row))
        return row_id

    async def set_credential_active(self, distributor: str, is_active: bool) -> None:
        if self.engine is None:
            for row in self._mem_credentials:
                if row["distributor"] == distributor:
                    row["is_active"] = is_active
            return
        async with self.engine.begin() as conn:
            await conn.execute(
                update(distributor_credentials_table)
                .where(distributor_credentials_table.c.distributor == distributor)
                .values(is_active=is_active)
            )

    async def fetch_active_credentials(self) -> list[DistributorCredential]:
        if self.engine is None:
            rows = [r for r in self._mem_credentials if r["is_active"]]
        else:
            stmt = (
                select(distributor_credentials_table)
                .where(distributor_credentials_table.c.is_active == True)  # noqa: E712
                .order_by(distributor_credentials_table.c.created_at)
            )
            async with self.engine.connect() as conn:
                rows = [dict(r._mapping) for r in (await conn.execute(stmt)).all()]
        return [
            DistributorCredential(
                distributor_name=r["distributor"],
                login_url=r["login_url"],
                username=r["username"],
                encrypted_password=r["password_encrypted"],
                is_active=bool(r["is_active"]),
            )
            for r in rows
        ]

    async def record_distributor_result(self, distributor: str, *, success: bool) -> None:
        now = datetime.now(timezone.utc)
        if self.engine is None:
            for row in self._mem_credentials:
                if row["distributor"] != distributor:
                    continue
                if success:
                    row["last_success_at"] = now
                    row["failure_count"] = 0
                else:
                    row["last_failure_at"] = now
                    row["failure_count"] = row.get("failure_count", 0) + 1
            return
        table = distributor_credentials_table
        values: dict[str, Any] = (
            {"last_success_at": now, "failure_count": 0}
            if success
            else {"last_failure_at": now, "failure_count": table.c.failure_count + 1}
        )
        async with self.engine.begin() as conn:
            await conn.execute(update(table).where(table.c.distributor == distributor).values(**values))

    # ── Manual escalation queue ─────────────────────────────────────

    async def insert_escalation(self, record: EscalationRecord) -> str:
        row_id = str(uuid4())
        row = {
            "id": row_id,
            "vin": record.vin,
            "glass_position": record.glass_position,
            "year": record.year,
            "make": record.make,
            "model": record.model,
            "transaction_id": record.transaction_id,
            "customer_name": record.customer_name,
            "customer_phone": record.customer_phone,
            "urgency": record.urgency,
            "attempt_log": list(record.attempt_log),
            "status": record.status,
            "created_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            raise StorageUnavailableError(f"cannot queue {record.glass_position} for {record.vin}: no database")
        async with self.engine.begin() as conn:
            await conn.execute(insert(manual_queue_table).values(**row))
        return row_id

    async def fetch_escalations(self, status: str = "pending", limit: int = 100) -> list[dict[str, Any]]:
        if self.engine is None:
            raise StorageUnavailableError("manual research queue unavailable")
        stmt = (
            select(manual_queue_table)
            .where(manual_queue_table.c.status == status)
            .order_by(manual_queue_table.c.created_at)
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Parts cache ─────────────────────────────────────────────────

    async def get_cached_part(self, vin_pattern: str, glass_position: str) -> GlassPartResult | None:
        now = datetime.now(timezone.utc)
        if self.engine is None:
            row = next(
                (
                    r for r in self._mem_parts_cache
                    if r["vin_pattern"] == vin_pattern and r["glass_position"] == glass_position
                ),
                None,
            )
            if row is None:
                return None
            row["lookup_count"] += 1
            row["last_lookup_at"] = now
            return _row_to_part(row)

        table = parts_cache_table
        stmt = (
            select(table)
            .where(table.c.vin_pattern == vin_pattern)
            .where(table.c.glass_position == glass_position)
            .limit(1)
        )
        async with self.engine.begin() as conn:
            found = (await conn.execute(stmt)).first()
            if found is None:
                return None
            row = dict(found._mapping)
            await conn.execute(
                update(table)
                .where(table.c.id == row["id"])
                .values(lookup_count=table.c.lookup_count + 1, last_lookup_at=now)
            )
        return _row_to_part(row)

    async def upsert_cached_part(self, vehicle: VehicleIdentity, part: GlassPartResult, source: str) -> None:
        values = {
            "vin_pattern": vehicle.vin_pattern,
            "year": vehicle.year,
            "make": vehicle.make,
            "model": vehicle.model,
            "trim": vehicle.trim,
            "body_style": vehicle.body_style,
            "glass_position": part.glass_position,
            "nags_part_number": part.nags_part_number,
            "nags_part_number_alt": part.alternate_part_number,
            "features": sorted(part.features),
            "last_known_cost": part.price.cost if part.price else None,
            "last_price_date": part.price.as_of_date if part.price else None,
            "price_source": part.price.source if part.price else None,
            "source": source,
            "updated_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            for row in self._mem_parts_cache:
                if row["vin_pattern"] == vehicle.vin_pattern and row["glass_position"] == part.glass_position:
                    row.update(values)
                    return
            self._mem_parts_cache.append({"id": str(uuid4()), "lookup_count": 0, **values})
            return

        table = parts_cache_table
        async with self.engine.begin() as conn:
            existing = (
                await conn.execute(
                    select(table.c.id)
                    .where(table.c.vin_pattern == vehicle.vin_pattern)
                    .where(table.c.glass_position == part.glass_position)
                    .limit(1)
                )
            ).first()
            if existing is None:
                await conn.execute(insert(table).values(id=str(uuid4()), lookup_count=0, **values))
            else:
                await conn.execute(update(table).where(table.c.id == existing.id).values(**values))

    # ── Lookup log ──────────────────────────────────────────────────

    async def insert_lookup_log(self, record: dict[str, Any]) -> str:
        row_id = str(uuid4())
        row = {
            "id": row_id,
            "vin": record["vin"],
            "glass_positions": ",".join(record["glass_positions"]),
            "resolved_tiers": record.get("resolved_tiers", {}),
            "escalated_positions": record.get("escalated_positions", []),
            "tier_durations_ms": record.get("tier_durations_ms", {}),
            "total_duration_ms": int(record["total_duration_ms"]),
            "success": bool(record["success"]),
            "cached": bool(record.get("cached", False)),
            "error_message": record.get("error_message"),
            "created_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            self._mem_lookup_log.append(row)
            return row_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(lookup_log_table).values(**row))
        return row_id

    async def get_recent_lookups(self, limit: int = 50) -> list[dict[str, Any]]:
        if self.engine is None:
            return self._mem_lookup_log[-limit:]
        stmt = (
            select(lookup_log_table)
            .order_by(lookup_log_table.c.created_at.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]


def _row_to_part(row: dict[str, Any]) -> GlassPartResult:
    price = None
    if row.get("last_known_cost") is not None:
        price = PartPrice(
            cost=int(row["last_known_cost"]),
            source=row.get("price_source") or "unknown",
            as_of_date=row.get("last_price_date") or datetime.now(timezone.utc),
        )
    return GlassPartResult(
        nags_part_number=row["nags_part_number"],
        glass_position=row["glass_position"],
        features=frozenset(row.get("features") or ()),
        alternate_part_number=row.get("nags_part_number_alt"),
        price=price,
    )
