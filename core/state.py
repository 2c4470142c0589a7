"""
state.py - Trading Engine State

Typed runtime state for the trading engine: environment mode, lifecycle
status and the engine-state record that is persisted on every transition.
Does not contain trading logic - purely for state management.
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Environment(Enum):
    """Trading environment modes."""
    PAPER = "paper"
    LIVE = "live"


class EngineStatus(Enum):
    """Engine lifecycle states. STARTING/STOPPING are transient."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"

    def __str__(self):
        return self.value


@dataclass
class EngineState:
    """
    Snapshot of the engine persisted under the `engine` key of engine_state.

    Attributes:
        status: Current lifecycle status
        session_id: Active session id (None when no session is open)
        started_at: When the engine last started
        last_tick: Completion time of the last tick
        last_error: Last fatal/unexpected error surfaced to operators
        current_regime: Last regime classification (dict form)
        skipped_ticks: Ticks dropped because a previous tick was still running
    """
    status: EngineStatus = EngineStatus.STOPPED
    session_id: Optional[int] = None
    started_at: Optional[datetime] = None
    last_tick: Optional[datetime] = None
    last_error: Optional[str] = None
    current_regime: Optional[Dict[str, Any]] = None
    skipped_ticks: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.status == EngineStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['is_running'] = self.is_running
        for key in ('started_at', 'last_tick'):
            value = getattr(self, key)
            data[key] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineState":
        if not data:
            return cls()

        def _dt(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            status=EngineStatus(data.get('status', 'stopped')),
            session_id=data.get('session_id'),
            started_at=_dt(data.get('started_at')),
            last_tick=_dt(data.get('last_tick')),
            last_error=data.get('last_error'),
            current_regime=data.get('current_regime'),
            skipped_ticks=int(data.get('skipped_ticks') or 0),
            metadata=dict(data.get('metadata') or {}),
        )

    def __repr__(self) -> str:
        return (
            f"EngineState(status={self.status.value}, session={self.session_id}, "
            f"last_tick={self.last_tick}, last_error={self.last_error!r})"
        )
