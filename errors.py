"""Exception hierarchy for telemetry ingestion and twin health aggregation."""

from __future__ import annotations

from typing import Sequence


class TwinError(Exception):
    """Base exception for all twin ingestion errors."""

    kind = "error"


class UnknownCategoryError(TwinError, KeyError):
    """No upper limit is registered for the requested measurement category."""

    kind = "unknown_category"

    def __init__(self, category: object) -> None:
        self.category = category
        super().__init__(f"No upper limit registered for category {category!r}.")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message.
        return str(self.args[0])


class ParseError(TwinError, ValueError):
    """Telemetry body is malformed or carries a non-numeric reading."""

    kind = "parse"


class DeviceNotFoundError(TwinError):
    """No sensor twin is registered for the device identifier."""

    kind = "not_found"

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"No sensor twin registered for device {device_id!r}.")


class StoreFault(TwinError):
    """A query, patch or connect call against the twin graph failed.

    The batch processor treats this as a client-level fault: the client
    handle is dropped and re-established before the next event.
    """

    kind = "store"

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        dt_id: str | None = None,
    ) -> None:
        self.operation = operation
        self.dt_id = dt_id
        super().__init__(message)


class StoreUnavailableError(StoreFault):
    """The twin graph client could not be connected."""

    kind = "unavailable"


class BatchFailure(TwinError):
    """Two or more events of a batch failed."""

    kind = "batch"

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        reasons = "; ".join(str(error) for error in self.errors)
        super().__init__(f"{len(self.errors)} events failed: {reasons}")


class BatchCancelledError(TwinError):
    """Processing stopped before every event of the batch was handled."""

    kind = "cancelled"

    def __init__(self, pending: int) -> None:
        self.pending = pending
        super().__init__(f"Batch cancelled with {pending} events not processed.")
