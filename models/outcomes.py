"""Typed results reported by the updater, aggregator and batch processor."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from errors import BatchCancelledError, BatchFailure, TwinError


class OutcomeStatus(str, Enum):
    """What a single write step did to the twin graph."""

    patched = "patched"
    unchanged = "unchanged"
    noop = "noop"
    failed = "failed"


class EventStatus(str, Enum):
    """Final state of one event inside a batch."""

    updated = "updated"
    skipped = "skipped"
    failed = "failed"
    pending = "pending"


@dataclass(slots=True)
class UpdateOutcome:
    dt_id: Optional[str]
    status: OutcomeStatus
    operations: List[Dict[str, Any]] = field(default_factory=list)
    value: Optional[float] = None
    error: Optional[TwinError] = None
    aggregation: Optional["UpdateOutcome"] = None

    @property
    def failed(self) -> bool:
        return self.status is OutcomeStatus.failed

    def first_error(self) -> Optional[TwinError]:
        """Return this step's error or the one from the triggered aggregation."""
        if self.error is not None:
            return self.error
        if self.aggregation is not None:
            return self.aggregation.error
        return None


@dataclass(slots=True)
class EventResult:
    index: int
    device_id: Optional[str]
    status: EventStatus
    sensor: Optional[UpdateOutcome] = None
    error: Optional[BaseException] = None
    reason: Optional[str] = None

    @property
    def computed_health(self) -> Optional[float]:
        if self.sensor is None or self.sensor.aggregation is None:
            return None
        return self.sensor.aggregation.value


@dataclass
class BatchResult:
    """Per-event results of one batch plus the transport-facing verdict."""

    events: List[EventResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_events(self) -> List[EventResult]:
        return [event for event in self.events if event.status is EventStatus.failed]

    @property
    def pending_events(self) -> List[EventResult]:
        return [event for event in self.events if event.status is EventStatus.pending]

    @property
    def errors(self) -> List[BaseException]:
        return [event.error for event in self.failed_events if event.error is not None]

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def failure(self) -> Optional[BaseException]:
        """The exception the transport should see, or ``None`` on success.

        A single failed event surfaces its own error; several are wrapped in
        :class:`BatchFailure`.
        """
        errors = self.errors
        if len(errors) == 1:
            return errors[0]
        if len(errors) > 1:
            return BatchFailure(errors)
        if self.cancelled:
            return BatchCancelledError(len(self.pending_events))
        return None

    def raise_for_failures(self) -> None:
        failure = self.failure
        if failure is not None:
            raise failure
