from __future__ import annotations

import logging
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .metrics import Metrics
from .proto import iso_from_ms

log = logging.getLogger("pagesync.core.state")

Strength = Literal["strong", "weak"]


class TenantState(BaseModel):
    """Latest navigation of one tenant; serialised with camelCase keys."""

    rem_id: Optional[str] = Field(default=None, alias="remId")
    strength: Optional[Strength] = None
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    source_client_id: Optional[str] = Field(default=None, alias="sourceClientId")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_populated(self) -> bool:
        return bool(self.rem_id and self.strength and self.updated_at and self.source_client_id)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


EMPTY_STATE = TenantState()


class StateStore:
    """Per-tenant last-write-wins navigation cache.

    The store is the only writer of TenantState. States are frozen models, so
    handing one out never exposes the internal maps.
    """

    def __init__(self, metrics: Metrics) -> None:
        self.metrics = metrics
        self._states: Dict[str, TenantState] = {}
        self._touched_ms: Dict[str, int] = {}

    def get(self, tenant: str) -> TenantState:
        return self._states.get(tenant, EMPTY_STATE)

    def apply_update(
        self,
        tenant: str,
        rem_id: str,
        strength: str,
        source_client_id: str,
        now: int,
    ) -> TenantState:
        # wall clock may step back; the tenant's stamp must not
        stamp = max(now, self._touched_ms.get(tenant, now))
        state = TenantState(
            rem_id=rem_id,
            strength=strength,
            updated_at=iso_from_ms(stamp),
            source_client_id=source_client_id,
        )
        self._states[tenant] = state
        self._touched_ms[tenant] = stamp
        return state

    def expire(self, tenant: str, reason: str) -> None:
        self._states.pop(tenant, None)
        self._touched_ms.pop(tenant, None)
        self.metrics.incr("memoryLatestStateClearedTotal")
        log.info("memory.latest_state.cleared reason=%s user=%s", reason, tenant)

    def stale_tenants(self, now: int, ttl_ms: int) -> List[str]:
        return [tenant for tenant, touched in self._touched_ms.items() if now - touched > ttl_ms]

    def last_touched(self, tenant: str) -> Optional[int]:
        return self._touched_ms.get(tenant)

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, tenant: object) -> bool:
        return tenant in self._states


__all__ = ["TenantState", "EMPTY_STATE", "StateStore", "Strength"]
