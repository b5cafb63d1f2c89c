from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from nags.config import LookupConfig
from nags.data_models import GLASS_POSITIONS

_VIN_RE = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")
_FEATURE_SPLIT_RE = re.compile(r"[\s,]+")
_MONEY_STRIP_RE = re.compile(r"[$,\s]")
_CENTS = Decimal("1")

_DEFAULT_FEATURE_CODES = LookupConfig().feature_codes

# Distributor and pricing-engine labels seen for each canonical position.
_POSITION_ALIASES: dict[str, str] = {
    "windshield": "windshield",
    "windscreen": "windshield",
    "front_windshield": "windshield",
    "rear_windshield": "rear_windshield",
    "rear_window": "rear_windshield",
    "rear_glass": "rear_windshield",
    "back_glass": "rear_windshield",
    "backlite": "rear_windshield",
    "front_driver": "front_driver",
    "door_fl": "front_driver",
    "front_left_door": "front_driver",
    "front_passenger": "front_passenger",
    "door_fr": "front_passenger",
    "front_right_door": "front_passenger",
    "rear_driver": "rear_driver",
    "door_rl": "rear_driver",
    "rear_left_door": "rear_driver",
    "rear_passenger": "rear_passenger",
    "door_rr": "rear_passenger",
    "rear_right_door": "rear_passenger",
    "quarter_panel_left": "quarter_panel_left",
    "quarter_left": "quarter_panel_left",
    "left_quarter": "quarter_panel_left",
    "quarter_panel_right": "quarter_panel_right",
    "quarter_right": "quarter_panel_right",
    "right_quarter": "quarter_panel_right",
    "vent_left": "vent_left",
    "left_vent": "vent_left",
    "vent_right": "vent_right",
    "right_vent": "vent_right",
    "sunroof": "sunroof",
    "sun_roof": "sunroof",
    "moonroof": "moonroof",
    "moon_roof": "moonroof",
}


def normalize_vin(vin: str | None) -> str:
    return (vin or "").strip().upper()


def is_well_formed_vin(vin: str) -> bool:
    """17 characters, digits and capitals, excluding I, O and Q. No checksum."""
    return bool(_VIN_RE.match(vin))


def parse_features(
    raw: str | Iterable[str] | None,
    codes: Mapping[str, str] | None = None,
) -> frozenset[str]:
    """Normalize distributor feature codes; unknown codes are kept lower-cased."""
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        tokens = _FEATURE_SPLIT_RE.split(raw)
    else:
        tokens = [t for item in raw for t in _FEATURE_SPLIT_RE.split(str(item))]
    table = _DEFAULT_FEATURE_CODES if codes is None else codes
    return frozenset(table.get(t.upper(), t.lower()) for t in tokens if t)


def to_cents(amount: Any) -> int | None:
    """Convert a major-unit amount to integer cents, rounding half up."""
    if amount is None or isinstance(amount, bool):
        return None
    if isinstance(amount, str):
        text = _MONEY_STRIP_RE.sub("", amount)
        if not text:
            return None
    else:
        text = str(amount)
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return int((value * 100).quantize(_CENTS, rounding=ROUND_HALF_UP))


def canonical_position(raw: str | None) -> str | None:
    if not raw:
        return None
    key = re.sub(r"[\s\-/]+", "_", str(raw).strip().lower())
    return _POSITION_ALIASES.get(key)


def normalize_positions(requested: Iterable[str], config: LookupConfig | None = None) -> list[str]:
    """Expand ``all``, drop duplicates, and reject positions outside the enumerated set."""
    cfg = config or LookupConfig()
    out: list[str] = []
    for raw in requested:
        token = str(raw).strip().lower()
        expanded = cfg.all_positions if token == "all" else (token,)
        for pos in expanded:
            if pos not in GLASS_POSITIONS:
                raise ValueError(f"Unknown glass position: {raw!r}")
            if pos not in out:
                out.append(pos)
    if not out:
        raise ValueError("At least one glass position is required")
    return out
