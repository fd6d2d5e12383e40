"""Batch orchestration: telemetry events in, twin updates and batch records out."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Union
from uuid import uuid4

from app.schemas import BatchRecord, BatchStatus, EventError, EventRecord
from datastore.batch_results import MockBatchTable, build_default_batch_table
from datastore.clients import TwinGraphClient, build_twin_client, disconnect_all
from errors import ParseError, StoreFault, StoreUnavailableError
from models.outcomes import BatchResult, EventResult, EventStatus, OutcomeStatus, UpdateOutcome
from models.twins import TelemetryEvent
from services.aggregator import HealthAggregator
from services.resolver import DEFAULT_SENSOR_MODEL, DeviceResolver
from services.sensor_updater import SensorUpdater
from services.thresholds import ThresholdTable
from settings import get_settings

logger = logging.getLogger(__name__)


class InboundMessage:
    """Undecoded message as delivered by the transport layer."""

    __slots__ = ("device_id", "body")

    def __init__(self, device_id: str, body: Union[bytes, str, Dict[str, Any]]) -> None:
        self.device_id = device_id
        self.body = body

    def decode(self) -> TelemetryEvent:
        return TelemetryEvent.from_message(self.body, self.device_id)


Message = Union[InboundMessage, TelemetryEvent]


class BatchProcessor:
    """Processes batches sequentially over one worker-owned client handle.

    The client starts disconnected. It is connected before the first event,
    dropped after any failed event and lazily reconnected before the next one.
    """

    def __init__(
        self,
        client: TwinGraphClient,
        sensor_model: str = DEFAULT_SENSOR_MODEL,
        thresholds: Optional[ThresholdTable] = None,
        flush: bool = False,
    ) -> None:
        self.client = client
        self.flush = flush
        self.resolver = DeviceResolver(client, sensor_model=sensor_model)
        self.aggregator = HealthAggregator(client, thresholds=thresholds, sensor_model=sensor_model)
        self.updater = SensorUpdater(client, self.aggregator)

    def process_batch(
        self,
        messages: Sequence[Message],
        stop: Optional[threading.Event] = None,
        batch_id: Optional[str] = None,
    ) -> BatchResult:
        """Process ``messages`` in delivery order.

        Raises :class:`StoreFault` without consuming any event when the client
        cannot be connected up front; the transport should redeliver.
        """
        if not self.client.is_connected:
            self._connect(batch_id)

        result = BatchResult()
        for index, message in enumerate(messages):
            if stop is not None and stop.is_set():
                result.cancelled = True
                result.events.extend(
                    EventResult(index=pending_index, device_id=pending.device_id, status=EventStatus.pending)
                    for pending_index, pending in enumerate(messages[index:], start=index)
                )
                logger.warning(
                    "Batch interrupted; remaining events left for redelivery.",
                    extra={"batch_id": batch_id, "event_count": len(messages) - index},
                )
                break
            result.events.append(self._process_event(index, message, batch_id))
        return result

    def _connect(self, batch_id: Optional[str]) -> None:
        try:
            self.client.connect()
        except StoreFault:
            logger.error("Twin graph client connection failed.", extra={"batch_id": batch_id})
            raise
        except Exception as exc:
            logger.error("Twin graph client connection failed.", extra={"batch_id": batch_id})
            raise StoreUnavailableError(str(exc), operation="connect") from exc

    def _process_event(self, index: int, message: Message, batch_id: Optional[str]) -> EventResult:
        device_id = message.device_id
        if self.flush:
            return EventResult(index=index, device_id=device_id, status=EventStatus.skipped, reason="flushed")

        try:
            if not self.client.is_connected:
                self._connect(batch_id)
            event = message if isinstance(message, TelemetryEvent) else message.decode()
            sensor = self.resolver.resolve(event.device_id)
            outcome = self.updater.apply_reading(sensor, event)
        except ParseError as exc:
            logger.warning(
                "Skipping event with unreadable payload.",
                extra={"batch_id": batch_id, "event_index": index, "device_id": device_id, "reason": str(exc)},
            )
            return EventResult(index=index, device_id=device_id, status=EventStatus.skipped, reason=str(exc))
        except Exception as exc:
            return self._fail(index, device_id, exc, batch_id)

        error = outcome.first_error()
        if error is not None:
            return self._fail(index, device_id, error, batch_id, outcome)

        status = EventStatus.updated if outcome.status is OutcomeStatus.patched else EventStatus.skipped
        return EventResult(index=index, device_id=device_id, status=status, sensor=outcome)

    def _fail(
        self,
        index: int,
        device_id: Optional[str],
        error: BaseException,
        batch_id: Optional[str],
        outcome: Optional[UpdateOutcome] = None,
    ) -> EventResult:
        logger.error(
            "Event processing failed; dropping twin graph client.",
            extra={"batch_id": batch_id, "event_index": index, "device_id": device_id, "reason": str(error)},
        )
        self.client.disconnect()
        return EventResult(
            index=index,
            device_id=device_id,
            status=EventStatus.failed,
            sensor=outcome,
            error=error,
            reason=str(error),
        )


def build_batch_record(
    batch_id: str,
    result: BatchResult,
    received_at: datetime,
    processing_ms: int,
) -> BatchRecord:
    events: List[EventRecord] = []
    errors: List[EventError] = []
    for event in result.events:
        sensor = event.sensor
        events.append(
            EventRecord(
                index=event.index,
                device_id=event.device_id,
                status=event.status,
                dt_id=sensor.dt_id if sensor else None,
                asset_id=sensor.aggregation.dt_id if sensor and sensor.aggregation else None,
                computed_health=event.computed_health,
                reason=event.reason,
            )
        )
        if event.status is EventStatus.failed and event.error is not None:
            errors.append(
                EventError(
                    index=event.index,
                    device_id=event.device_id,
                    kind=getattr(event.error, "kind", "error"),
                    reason=str(event.error),
                )
            )

    failure = result.failure
    return BatchRecord(
        batch_id=batch_id,
        status=BatchStatus.succeeded if failure is None else BatchStatus.failed,
        received_at=received_at,
        processed_at=datetime.now(timezone.utc),
        processing_ms=processing_ms,
        event_count=len(result.events),
        events=events,
        errors=errors,
        detail=str(failure) if failure is not None else None,
    )


class IngestionService:
    """Runs batches on a pool of workers, each owning its own client handle."""

    def __init__(
        self,
        table: MockBatchTable,
        client_factory: Callable[[], TwinGraphClient],
        workers: int = 4,
        sensor_model: str = DEFAULT_SENSOR_MODEL,
        thresholds: Optional[ThresholdTable] = None,
        flush: bool = False,
    ) -> None:
        self.table = table
        self.client_factory = client_factory
        self.sensor_model = sensor_model
        self.thresholds = thresholds
        self.flush = flush
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch-worker")
        self._futures: Dict[str, Future[None]] = {}
        self._futures_lock = Lock()
        self._clients: List[TwinGraphClient] = []
        # ids of handles currently inside a batch or lookup on their own thread
        self._busy: Set[int] = set()
        self._clients_lock = Lock()
        self._local = threading.local()
        self._stop = threading.Event()

    def enqueue_batch(self, messages: Sequence[Message]) -> str:
        """Record a batch and hand it to a background worker."""
        if not messages:
            raise ValueError("Batch contains no events.")

        batch_id = str(uuid4())
        received_at = datetime.now(timezone.utc)
        self.table.put_item(
            BatchRecord(
                batch_id=batch_id,
                status=BatchStatus.received,
                received_at=received_at,
                event_count=len(messages),
            )
        )

        future = self.executor.submit(
            self._run_batch, batch_id=batch_id, messages=list(messages), received_at=received_at
        )
        with self._futures_lock:
            self._futures[batch_id] = future
        future.add_done_callback(lambda _f, bid=batch_id: self._clear_future(bid))
        return batch_id

    def process_now(self, messages: Sequence[Message]) -> BatchRecord:
        """Process a batch on the calling thread and return its record."""
        batch_id = str(uuid4())
        self._run_batch(batch_id, list(messages), datetime.now(timezone.utc))
        return self.fetch_result(batch_id)

    def fetch_result(self, batch_id: str) -> BatchRecord:
        result = self.table.get_item(batch_id)
        if result is None:
            raise KeyError(f"Batch {batch_id!r} not found.")
        return result

    def get_twin(self, dt_id: str) -> Dict[str, Any]:
        """Look up a twin through the calling thread's client handle."""
        with self._checked_out() as processor:
            client = processor.client
            try:
                if not client.is_connected:
                    client.connect()
                twin = client.get_twin(dt_id)
            except StoreFault:
                client.disconnect()
                raise
        if twin is None:
            raise KeyError(f"Twin {dt_id!r} not found.")
        return twin

    def shutdown(self) -> None:
        """Stop in-flight batches between events and release idle client handles.

        Handles in use stay with their thread, which disconnects them once the
        stop event ends its batch.
        """
        self._stop.set()
        self.executor.shutdown(wait=False, cancel_futures=True)
        with self._clients_lock:
            idle = [client for client in self._clients if id(client) not in self._busy]
            disconnect_all(idle)

    def _clear_future(self, batch_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(batch_id, None)

    def _worker_processor(self) -> BatchProcessor:
        processor = getattr(self._local, "processor", None)
        if processor is None:
            client = self.client_factory()
            with self._clients_lock:
                self._clients.append(client)
            processor = BatchProcessor(
                client,
                sensor_model=self.sensor_model,
                thresholds=self.thresholds,
                flush=self.flush,
            )
            self._local.processor = processor
        return processor

    @contextmanager
    def _checked_out(self) -> Iterator[BatchProcessor]:
        processor = self._worker_processor()
        handle = id(processor.client)
        with self._clients_lock:
            self._busy.add(handle)
        try:
            yield processor
        finally:
            with self._clients_lock:
                self._busy.discard(handle)
                if self._stop.is_set():
                    processor.client.disconnect()

    def _run_batch(self, batch_id: str, messages: List[Message], received_at: datetime) -> None:
        start_time = time.perf_counter()
        self.table.put_item(
            BatchRecord(
                batch_id=batch_id,
                status=BatchStatus.processing,
                received_at=received_at,
                event_count=len(messages),
            )
        )

        try:
            with self._checked_out() as processor:
                result = processor.process_batch(messages, stop=self._stop, batch_id=batch_id)
        except StoreFault as exc:
            record = BatchRecord(
                batch_id=batch_id,
                status=BatchStatus.deferred,
                received_at=received_at,
                processed_at=datetime.now(timezone.utc),
                processing_ms=int((time.perf_counter() - start_time) * 1000),
                event_count=len(messages),
                detail=str(exc),
            )
        else:
            record = build_batch_record(
                batch_id,
                result,
                received_at,
                int((time.perf_counter() - start_time) * 1000),
            )

        self.table.put_item(record)
        logger.info(
            "Batch finished.",
            extra={
                "batch_id": batch_id,
                "status": record.status.value,
                "event_count": record.event_count,
                "error_count": len(record.errors),
                "processing_ms": record.processing_ms,
            },
        )


@lru_cache
def build_default_service(
    workers: Optional[int] = None,
) -> IngestionService:
    """Factory that wires the service from settings."""
    settings = get_settings()
    table = build_default_batch_table()
    worker_count = workers or settings.processor_workers
    return IngestionService(
        table=table,
        client_factory=lambda: build_twin_client(settings),
        workers=worker_count,
        sensor_model=settings.sensor_model,
        flush=settings.flush_events,
    )
