"""
FlightSurety Event Dispatcher

Consumes ledger event subscriptions and routes each event:

    OracleRequest    -> tracker.on_request_observed + response submission
    OracleReport     -> tracker.on_report_observed
    FlightStatusInfo -> tracker.on_resolution_observed
    airline/insurance/payout topics -> logged

Each topic is a separate subscription, so a report can be delivered before
the request it answers. Reports and resolutions for an untracked key are
buffered for a short grace window and replayed, in sequence order, as soon as
the request is observed. Whatever is still buffered after the window is
discarded. Likewise the FlightStatusInfo log can overtake the OracleReport
that reached quorum in the same transaction; the tracker compares sequences
and still records that report.

Every event is handled in isolation: a decode or routing failure is logged
and the subscription keeps going.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple, Union
import logging

from pydantic import ValidationError

from ..exceptions import DecodeError, TrackerStateError
from ..models import (
    FlightStatusInfoEvent,
    InformationalEvent,
    LedgerEvent,
    LedgerTopic,
    OracleReportEvent,
    OracleRequestEvent,
    OracleRequestPayload,
    RequestKey,
    StatusPayload,
)
from .submitter import ResponseSubmitter
from .tracker import RequestTracker


logger = logging.getLogger(__name__)


TypedEvent = Union[OracleRequestEvent, OracleReportEvent, FlightStatusInfoEvent, InformationalEvent]
_Buffered = Union[OracleReportEvent, FlightStatusInfoEvent]


def decode_event(event: LedgerEvent) -> TypedEvent:
    """
    Decode a raw ledger log into its typed event.

    Raises:
        DecodeError: Unknown topic, missing fields, bad types, or a status
            code outside the closed StatusCode set
    """
    try:
        topic = LedgerTopic(event.topic)
    except ValueError as e:
        raise DecodeError(event.topic, "unknown topic") from e

    try:
        if topic == LedgerTopic.ORACLE_REQUEST:
            request = OracleRequestPayload.model_validate(event.payload)
            return OracleRequestEvent(key=request.key, index=request.index, sequence=event.sequence)

        if topic == LedgerTopic.ORACLE_REPORT:
            report = StatusPayload.model_validate(event.payload)
            # The contract's OracleReport log does not always name the sender;
            # fall back to the transaction that carried it
            oracle = report.oracle or f"tx:{event.tx_hash or '%d-%d' % event.sequence}"
            return OracleReportEvent(
                key=report.key, status=report.status, sequence=event.sequence, oracle=oracle,
            )

        if topic == LedgerTopic.FLIGHT_STATUS_INFO:
            info = StatusPayload.model_validate(event.payload)
            return FlightStatusInfoEvent(key=info.key, status=info.status, sequence=event.sequence)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise DecodeError(event.topic, f"invalid fields: {fields}") from e

    return InformationalEvent(topic=topic.value, payload=dict(event.payload), sequence=event.sequence)


class EventDispatcher:
    """
    Routes ledger events to the tracker and the response submitter.

    The dispatcher is the tracker's only writer.
    """

    def __init__(
        self,
        tracker: RequestTracker,
        submitter: ResponseSubmitter,
        report_grace_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self._tracker = tracker
        self._submitter = submitter
        self._grace = report_grace_seconds
        self._clock = clock

        # Reports/resolutions that arrived before their request
        self._pending: Dict[RequestKey, List[Tuple[float, _Buffered]]] = defaultdict(list)
        # Sequence numbers already handled per key (replayed logs are dropped)
        self._seen: Dict[RequestKey, Set[Tuple[int, int]]] = defaultdict(set)

        self._counters: Dict[str, int] = {
            "handled": 0,
            "duplicates": 0,
            "decode_errors": 0,
            "state_errors": 0,
            "handler_errors": 0,
            "buffered": 0,
            "replayed": 0,
            "discarded_pending": 0,
        }

    def stats(self) -> Dict[str, int]:
        return {
            **self._counters,
            "pending": sum(len(items) for items in self._pending.values()),
        }

    # =========================================================================
    # Event handling
    # =========================================================================

    async def handle(self, event: LedgerEvent) -> None:
        """Decode and route one event. Never raises."""
        try:
            typed = decode_event(event)
            self._route(typed)
            self._counters["handled"] += 1
        except DecodeError as e:
            self._counters["decode_errors"] += 1
            logger.warning(f"Dropping event at block {event.block_number}: {e}")
        except TrackerStateError as e:
            self._counters["state_errors"] += 1
            logger.info(f"Discarding {event.topic} event: {e}")
        except Exception as e:
            self._counters["handler_errors"] += 1
            logger.error(f"Failed to handle {event.topic} event at block {event.block_number}: {e}")

    def _route(self, event: TypedEvent) -> None:
        if isinstance(event, InformationalEvent):
            logger.info(f"{event.topic}: {event.payload}")
            return

        seen = self._seen[event.key]
        if event.sequence in seen:
            self._counters["duplicates"] += 1
            logger.debug(f"Duplicate event {event.sequence} for {event.key} ignored")
            return
        seen.add(event.sequence)

        if isinstance(event, OracleRequestEvent):
            self._on_request(event)
        else:
            self._apply(event)

    def _on_request(self, event: OracleRequestEvent) -> None:
        self._tracker.on_request_observed(event.key, event.index)
        self._replay_pending(event.key)

        # A buffered resolution may already have closed the request
        state = self._tracker.state_of(event.key)
        if state is not None and state.is_terminal:
            logger.info(f"Request {event.key} already {state.value}; not responding")
            return
        self._submitter.schedule(event.key, event.index)

    def _apply(self, event: _Buffered) -> None:
        state = self._tracker.state_of(event.key)
        if state is None:
            self._pending[event.key].append((self._clock(), event))
            self._counters["buffered"] += 1
            logger.debug(f"Buffered {type(event).__name__} for untracked request {event.key}")
            return

        # Reports and the resolution travel on separate subscriptions; the
        # tracker keeps reports emitted before the resolution even if they
        # arrive after it
        if isinstance(event, OracleReportEvent):
            self._tracker.on_report_observed(
                event.key, event.oracle, event.status, sequence=event.sequence,
            )
        else:
            self._tracker.require_open(event.key)
            self._tracker.on_resolution_observed(
                event.key, event.status, sequence=event.sequence,
            )

    def _replay_pending(self, key: RequestKey) -> None:
        buffered = self._pending.pop(key, [])
        for _, event in sorted(buffered, key=lambda item: item[1].sequence):
            self._counters["replayed"] += 1
            try:
                self._apply(event)
            except TrackerStateError as e:
                self._counters["state_errors"] += 1
                logger.info(f"Discarding buffered event: {e}")

    def purge_pending(self, now: Optional[float] = None) -> int:
        """
        Discard buffered events older than the grace window.

        Returns:
            Number of events discarded
        """
        now = self._clock() if now is None else now
        discarded = 0

        for key in list(self._pending):
            kept = [(at, ev) for at, ev in self._pending[key] if now - at <= self._grace]
            discarded += len(self._pending[key]) - len(kept)
            if kept:
                self._pending[key] = kept
            else:
                del self._pending[key]

        # Forget sequence numbers of keys nobody tracks any more
        for key in list(self._seen):
            if key not in self._pending and self._tracker.state_of(key) is None:
                del self._seen[key]

        if discarded:
            self._counters["discarded_pending"] += discarded
            logger.warning(f"Discarded {discarded} reports with no matching request")
        return discarded

    # =========================================================================
    # Subscription loop
    # =========================================================================

    async def run(
        self,
        topic: str,
        events: AsyncIterator[LedgerEvent],
        stop: asyncio.Event,
    ) -> None:
        """
        Consume one subscription until `stop` is set or the stream ends.
        """
        logger.info(f"Listening for {topic} events")
        try:
            async for event in events:
                if stop.is_set():
                    break
                await self.handle(event)
        except asyncio.CancelledError:
            logger.info(f"{topic} subscription cancelled")
            raise
        except Exception as e:
            logger.error(f"{topic} subscription ended with an error: {e}")
            return
        logger.info(f"{topic} subscription closed")
