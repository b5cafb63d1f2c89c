from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, get_args


GlassPosition = Literal[
    "windshield",
    "rear_windshield",
    "front_driver",
    "front_passenger",
    "rear_driver",
    "rear_passenger",
    "quarter_panel_left",
    "quarter_panel_right",
    "vent_left",
    "vent_right",
    "sunroof",
    "moonroof",
]

GLASS_POSITIONS: tuple[str, ...] = get_args(GlassPosition)

Urgency = Literal["low", "normal", "high", "urgent"]

URGENCY_LEVELS: tuple[str, ...] = get_args(Urgency)

VIN_PATTERN_LENGTH = 11


@dataclass(frozen=True)
class VehicleIdentity:
    vin: str
    year: int
    make: str
    model: str
    trim: str | None = None
    body_style: str | None = None
    vin_pattern: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "vin_pattern", self.vin[:VIN_PATTERN_LENGTH])

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PartPrice:
    cost: int  # cents
    source: str
    as_of_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class GlassPartResult:
    nags_part_number: str
    glass_position: str
    features: frozenset[str] = frozenset()
    alternate_part_number: str | None = None
    price: PartPrice | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "nags_part_number": self.nags_part_number,
            "alternate_part_number": self.alternate_part_number,
            "glass_position": self.glass_position,
            "features": sorted(self.features),
            "price": None
            if self.price is None
            else {
                "cost": self.price.cost,
                "source": self.price.source,
                "as_of_date": self.price.as_of_date.isoformat(),
            },
        }


@dataclass
class TierOutcome:
    success: bool
    source: str
    parts: list[GlassPartResult] = field(default_factory=list)
    duration_ms: int = 0
    error: str | None = None
    # supplier per resolved position when it is narrower than ``source``
    sources: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TierAttempt:
    """Summary of one tier invocation, kept in the escalation attempt log."""

    tier: str
    source: str
    success: bool
    positions_requested: tuple[str, ...]
    positions_resolved: tuple[str, ...]
    duration_ms: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["positions_requested"] = list(self.positions_requested)
        payload["positions_resolved"] = list(self.positions_resolved)
        return payload


@dataclass(frozen=True)
class LookupRequest:
    vin: str
    glass_positions: tuple[str, ...]
    transaction_id: int | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    priority: str = "normal"
    timeout_seconds: float | None = None


@dataclass
class LookupOutcome:
    success: bool
    vehicle: VehicleIdentity | None
    parts: list[GlassPartResult] = field(default_factory=list)
    resolved_tier_per_position: dict[str, str] = field(default_factory=dict)
    resolved_source_per_position: dict[str, str] = field(default_factory=dict)
    escalated_positions: list[str] = field(default_factory=list)
    escalation_ids: list[str] = field(default_factory=list)
    attempt_log: list[TierAttempt] = field(default_factory=list)
    total_duration_ms: int = 0
    cached: bool = False
    error: str | None = None
    error_kind: Literal["identity", "escalation"] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "vehicle": None if self.vehicle is None else self.vehicle.to_dict(),
            "parts": [p.to_dict() for p in self.parts],
            "resolved_tier_per_position": dict(self.resolved_tier_per_position),
            "resolved_source_per_position": dict(self.resolved_source_per_position),
            "escalated_positions": list(self.escalated_positions),
            "escalation_ids": list(self.escalation_ids),
            "attempt_log": [a.to_dict() for a in self.attempt_log],
            "total_duration_ms": self.total_duration_ms,
            "cached": self.cached,
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass(frozen=True)
class DistributorCredential:
    distributor_name: str
    login_url: str
    username: str
    encrypted_password: str
    is_active: bool = True


@dataclass
class DistributorSession:
    token: str
    expires_at: datetime

    def is_valid(self, now: datetime | None = None) -> bool:
        current = now or datetime.now(timezone.utc)
        return current < self.expires_at


@dataclass
class EscalationRecord:
    vin: str
    glass_position: str
    year: int | None
    make: str | None
    model: str | None
    urgency: str = "normal"
    attempt_log: list[dict[str, Any]] = field(default_factory=list)
    transaction_id: int | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    status: str = "pending"
