from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

TIER_CACHE = "cache"
TIER_DISTRIBUTOR = "distributor"
TIER_FALLBACK = "fallback"
TIER_MANUAL = "manual"


@dataclass(frozen=True)
class LookupConfig:
    distributor_priority: tuple[str, ...] = ("mygrant", "pgw", "pilkington", "igc")
    all_positions: tuple[str, ...] = (
        "windshield",
        "rear_windshield",
        "front_driver",
        "front_passenger",
        "rear_driver",
        "rear_passenger",
    )
    fallback_default_position: str = "windshield"
    session_ttl_seconds: int = 4 * 60 * 60
    min_request_interval_seconds: float = 6.0
    request_jitter_seconds: float = 1.5
    feature_codes: Dict[str, str] = field(
        default_factory=lambda: {
            "RS": "rain_sensor",
            "HUD": "hud",
            "HTD": "heated",
            "ANT": "antenna",
            "ADAS": "adas",
        }
    )
