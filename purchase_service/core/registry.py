from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Literal, Optional

from ..common.time_util import utc_now_iso

Status = Literal["up", "degraded", "down"]

# EventPublisher state -> capability status
PUBLISHER_STATUS: Dict[str, Status] = {
    "uninitialized": "down",
    "ready": "up",
    "publishing": "up",
    "degraded": "degraded",
    "closed": "down",
}


@dataclass
class CapabilityState:
    name: str
    status: Status
    enabled: bool
    mode: str
    last_changed_at_utc: str
    detail: Optional[str] = None


class CapabilityRegistry:
    """Status of the service's dependencies, reported by /capabilities."""

    def __init__(self) -> None:
        self._items: Dict[str, CapabilityState] = {}

    def set(
        self,
        *,
        name: str,
        status: Status,
        enabled: bool,
        mode: str,
        detail: Optional[str] = None,
    ) -> None:
        self._items[name] = CapabilityState(
            name=name,
            status=status,
            enabled=enabled,
            mode=mode,
            last_changed_at_utc=utc_now_iso(),
            detail=detail,
        )

    def update_status(self, name: str, status: Status, detail: Optional[str] = None) -> None:
        """Change status only; last_changed_at_utc moves only on a real change."""
        cur = self._items[name]
        if cur.status == status and cur.detail == detail:
            return
        self._items[name] = replace(cur, status=status, detail=detail, last_changed_at_utc=utc_now_iso())

    def snapshot(self) -> list[CapabilityState]:
        return list(self._items.values())
