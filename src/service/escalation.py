from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from nags.data_models import URGENCY_LEVELS, EscalationRecord, TierAttempt, VehicleIdentity
from service.messaging import MANUAL_RESEARCH_TOPIC, KafkaBus
from service.storage import PostgresStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationRequest:
    vin: str
    vehicle: VehicleIdentity
    missing_positions: Sequence[str]
    transaction_id: int | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    priority: str = "normal"
    attempt_log: Sequence[TierAttempt] = field(default_factory=tuple)


class ManualEscalationQueue:
    """Persists one pending research record per unresolved glass position.

    Only storage failures escape; bad urgency values are coerced and operator
    notification is best-effort.
    """

    def __init__(self, store: PostgresStore, notifier: KafkaBus | None = None) -> None:
        self.store = store
        self.notifier = notifier

    async def queue_for_research(self, request: EscalationRequest) -> list[str]:
        urgency = request.priority if request.priority in URGENCY_LEVELS else "normal"
        if urgency != request.priority:
            logger.warning("Unknown urgency %r for %s; using 'normal'", request.priority, request.vin)
        attempt_log = [a.to_dict() for a in request.attempt_log]

        ids: list[str] = []
        for position in request.missing_positions:
            record = EscalationRecord(
                vin=request.vin,
                glass_position=position,
                year=request.vehicle.year,
                make=request.vehicle.make,
                model=request.vehicle.model,
                urgency=urgency,
                attempt_log=attempt_log,
                transaction_id=request.transaction_id,
                customer_name=request.customer_name,
                customer_phone=request.customer_phone,
            )
            ids.append(await self.store.insert_escalation(record))

        if ids:
            logger.info("Queued %d position(s) for manual research: %s", len(ids), list(request.missing_positions))
            await self._notify(request, ids, urgency)
        return ids

    async def _notify(self, request: EscalationRequest, ids: list[str], urgency: str) -> None:
        if self.notifier is None:
            return
        for record_id, position in zip(ids, request.missing_positions):
            message = {
                "record_id": record_id,
                "vin": request.vin,
                "glass_position": position,
                "vehicle": f"{request.vehicle.year} {request.vehicle.make} {request.vehicle.model}",
                "urgency": urgency,
                "transaction_id": request.transaction_id,
            }
            try:
                await self.notifier.publish(MANUAL_RESEARCH_TOPIC, message, key=request.vin)
            except Exception as exc:
                logger.warning("Manual research notification failed for %s: %s", record_id, exc)
