from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Any

from pydantic import ValidationError

from .errors import InvalidTargetStateError
from .models import TargetState


@dataclass(frozen=True)
class TargetSnapshot:
    version: int
    state: TargetState


class TargetStateHandle:
    """Versioned holder for the desired state.

    ``submit`` replaces the latest state wholesale. A reconciliation pass
    calls ``begin_pass`` which promotes the latest submission to *active*;
    submissions that arrive while the pass runs wait for the next pass.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._latest: TargetSnapshot | None = None
        self._active: TargetSnapshot | None = None
        self._version = 0

    @staticmethod
    def validate(state: TargetState | dict[str, Any]) -> TargetState:
        if isinstance(state, TargetState):
            return state
        try:
            return TargetState.model_validate(state)
        except ValidationError as e:
            raise InvalidTargetStateError(str(e)) from e

    def submit(self, state: TargetState | dict[str, Any]) -> TargetSnapshot:
        """Validate and store; on failure the previous state stays in place."""
        validated = self.validate(state)
        with self.lock:
            self._version += 1
            self._latest = TargetSnapshot(version=self._version, state=validated)
            return self._latest

    def latest(self) -> TargetSnapshot | None:
        with self.lock:
            return self._latest

    def active(self) -> TargetSnapshot | None:
        with self.lock:
            return self._active

    def begin_pass(self) -> TargetSnapshot | None:
        with self.lock:
            self._active = self._latest
            return self._active

    @property
    def pending(self) -> bool:
        """A submission newer than the one the last pass used is waiting."""
        with self.lock:
            if self._latest is None:
                return False
            return self._active is None or self._active.version != self._latest.version
