from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from nags.config import TIER_DISTRIBUTOR, LookupConfig
from nags.data_models import DistributorCredential, GlassPartResult, TierOutcome, VehicleIdentity
from nags.resolution import merge_parts, unresolved_positions
from service.distributors import DistributorAdapter
from service.storage import PostgresStore

logger = logging.getLogger(__name__)


class DistributorTier:
    """Walks the active distributors in priority order until every position is filled.

    Credentials are re-read on every lookup so a distributor can be disabled
    without a restart. Adapter instances (and their sessions) live as long as
    the tier.
    """

    def __init__(
        self,
        store: PostgresStore,
        adapter_factory: Callable[[str], DistributorAdapter | None],
        config: LookupConfig | None = None,
        priority: Sequence[str] | None = None,
    ) -> None:
        cfg = config or LookupConfig()
        self.store = store
        self.adapter_factory = adapter_factory
        self.priority = tuple(priority if priority is not None else cfg.distributor_priority)
        self._adapters: dict[str, DistributorAdapter] = {}

    def _rank(self, name: str) -> int:
        return self.priority.index(name) if name in self.priority else len(self.priority)

    def ordered(self, credentials: Sequence[DistributorCredential]) -> list[DistributorCredential]:
        """Priority order, one credential per distributor (the first row wins)."""
        # sorted() is stable, so unlisted distributors keep store order at the end
        out: list[DistributorCredential] = []
        seen: set[str] = set()
        for credential in sorted(credentials, key=lambda c: self._rank(c.distributor_name.lower())):
            name = credential.distributor_name.lower()
            if name in seen:
                logger.warning("Ignoring duplicate active credential for %s", name)
                continue
            seen.add(name)
            out.append(credential)
        return out

    def _adapter_for(self, credential: DistributorCredential) -> DistributorAdapter | None:
        name = credential.distributor_name.lower()
        adapter = self._adapters.get(name)
        if adapter is None:
            adapter = self.adapter_factory(name)
            if adapter is None:
                return None
            self._adapters[name] = adapter
        adapter.bind_credential(credential)
        return adapter

    async def lookup(self, vehicle: VehicleIdentity, positions: Sequence[str]) -> TierOutcome:
        start = time.monotonic()
        resolved: dict[str, GlassPartResult] = {}
        supplied_by: dict[str, str] = {}
        errors: list[str] = []

        credentials = [c for c in await self.store.fetch_active_credentials() if c.is_active]
        for credential in self.ordered(credentials):
            remaining = unresolved_positions(positions, resolved)
            if not remaining:
                break

            name = credential.distributor_name.lower()
            adapter = self._adapter_for(credential)
            if adapter is None:
                logger.warning("No adapter registered for distributor %s; skipping", name)
                continue

            try:
                found = await adapter.lookup_parts(vehicle, remaining)
            except Exception as exc:
                logger.warning("Distributor lookup failed for %s: %s", name, exc)
                errors.append(f"{name}: {exc}")
                await self._record(name, success=False)
                continue

            added = merge_parts(resolved, found, remaining)
            supplied_by.update(dict.fromkeys(added, name))
            logger.info("Distributor %s resolved %s of %s", name, added or "none", remaining)
            await self._record(name, success=True)

        parts = [resolved[p] for p in positions if p in resolved]
        return TierOutcome(
            success=bool(parts),
            source=TIER_DISTRIBUTOR if parts else "none",
            parts=parts,
            duration_ms=int((time.monotonic() - start) * 1000),
            error=None if parts or not errors else "; ".join(errors),
            sources={p: supplied_by[p] for p in positions if p in supplied_by},
        )

    async def _record(self, name: str, *, success: bool) -> None:
        try:
            await self.store.record_distributor_result(name, success=success)
        except Exception as exc:
            logger.warning("Could not record %s health for %s: %s", "success" if success else "failure", name, exc)
