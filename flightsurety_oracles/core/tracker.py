"""
FlightSurety Request Tracker

Per-request state machine keyed by RequestKey:

    OPEN ──(FlightStatusInfo observed)──> RESOLVED
      └───(no resolution within timeout)──> EXPIRED

RESOLVED and EXPIRED are terminal. Terminal records are kept for a retention
window so the query interface can show recent outcomes, then evicted oldest
first.

Concurrency:
    The event dispatcher is the only writer; the query interface and HTTP
    handlers read concurrently (possibly from worker threads). All access to
    the record map goes through one re-entrant lock, and readers only ever
    receive copies of records.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple
import logging

from ..exceptions import TrackerStateError
from ..models import RequestKey, RequestRecord, RequestState, StatusCode


logger = logging.getLogger(__name__)


RecordListener = Callable[[RequestRecord], None]


class RequestTracker:
    """Tracks every observed oracle request until it resolves or expires."""

    def __init__(
        self,
        request_timeout_seconds: float = 300,
        retention_window_seconds: float = 3600,
        max_retained_records: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the tracker.

        Args:
            request_timeout_seconds: Age after which an open request expires
            retention_window_seconds: How long terminal records are kept
            max_retained_records: Cap on terminal records kept at once
            clock: Source of the current time in epoch seconds
        """
        self._timeout = request_timeout_seconds
        self._retention = retention_window_seconds
        self._max_retained = max_retained_records
        self._clock = clock

        self._records: Dict[RequestKey, RequestRecord] = {}
        self._lock = threading.RLock()
        self._listeners: List[RecordListener] = []
        self._current_index: Optional[int] = None

        self._counters = {
            "late_reports": 0,
            "unknown_reports": 0,
            "unmatched_resolutions": 0,
            "resolved": 0,
            "expired": 0,
            "evicted": 0,
        }

    # =========================================================================
    # Writers (event dispatcher)
    # =========================================================================

    def on_request_observed(self, key: RequestKey, selected_index: int) -> RequestRecord:
        """
        Start tracking `key`, or do nothing if it is already tracked.

        Duplicate delivery of the same request event never resets state.
        """
        with self._lock:
            self._current_index = selected_index
            record = self._records.get(key)
            if record is not None:
                logger.debug(f"Duplicate request for {key} ignored (state={record.state.value})")
                return self._snapshot(record)

            record = RequestRecord(
                key=key,
                selected_index=selected_index,
                created_at=self._clock(),
            )
            self._records[key] = record
            logger.info(f"Tracking request {key} for index {selected_index}")
            return self._snapshot(record)

    def on_report_observed(
        self,
        key: RequestKey,
        oracle: str,
        status: StatusCode,
        sequence: Optional[Tuple[int, int]] = None,
    ) -> bool:
        """
        Record one oracle's report for an open request.

        A second report from the same oracle overwrites the first. Reports for
        unknown or terminal requests are discarded and counted, except a
        report the ledger emitted before the resolution that closed the
        request: its subscription delivered it late, but it still counts.

        Returns:
            True if the report was recorded
        """
        with self._lock:
            record = self._records.get(key)
            if record is None:
                self._counters["unknown_reports"] += 1
                logger.debug(f"Report from {oracle} for untracked request {key} discarded")
                return False
            emitted_before_close = (
                sequence is not None
                and record.resolved_by is not None
                and sequence < record.resolved_by
            )
            if not record.is_open and not emitted_before_close:
                record.late_reports += 1
                self._counters["late_reports"] += 1
                logger.debug(
                    f"Late report from {oracle} for {key} discarded (state={record.state.value})"
                )
                return False

            if oracle in record.responses and record.responses[oracle] != status:
                logger.warning(
                    f"Oracle {oracle} changed its report for {key}: "
                    f"{record.responses[oracle].name} -> {status.name}"
                )
            record.responses[oracle] = status
            return True

    def on_resolution_observed(
        self,
        key: RequestKey,
        status: Optional[StatusCode] = None,
        sequence: Optional[Tuple[int, int]] = None,
    ) -> bool:
        """
        Mark an open request as resolved by the ledger.

        `sequence` is the resolution event's (block, log index); reports
        emitted before it are still accepted after the transition.

        Returns:
            True if the record transitioned; False (logged) otherwise
        """
        with self._lock:
            record = self._records.get(key)
            if record is None or not record.is_open:
                self._counters["unmatched_resolutions"] += 1
                state = record.state.value if record else "untracked"
                logger.warning(f"Resolution for {key} ignored (state={state})")
                return False

            record.state = RequestState.RESOLVED
            record.resolved_status = status
            record.resolved_by = sequence
            record.closed_at = self._clock()
            self._counters["resolved"] += 1
            snapshot = self._snapshot(record)

        logger.info(
            f"Request {key} resolved with "
            f"{status.name if status is not None else 'unknown status'} "
            f"after {len(snapshot.responses)} reports"
        )
        self._notify(snapshot)
        return True

    def sweep_expired(self, now: Optional[float] = None) -> List[RequestKey]:
        """
        Expire open requests older than the timeout and evict stale terminal
        records.

        Idempotent: a second call with the same `now` changes nothing.

        Returns:
            Keys that transitioned to EXPIRED during this call
        """
        now = self._clock() if now is None else now
        expired: List[RequestRecord] = []

        with self._lock:
            for record in self._records.values():
                if record.is_open and record.age(now) > self._timeout:
                    record.state = RequestState.EXPIRED
                    record.closed_at = now
                    expired.append(self._snapshot(record))
            self._counters["expired"] += len(expired)
            self._evict(now)

        for record in expired:
            logger.info(
                f"Request {record.key} expired with {len(record.responses)} reports"
            )
            self._notify(record)
        return [record.key for record in expired]

    def _evict(self, now: float) -> None:
        # Terminal records always carry closed_at
        terminal = sorted(
            (r for r in self._records.values() if not r.is_open),
            key=lambda r: r.closed_at,
        )

        evicted = 0
        while terminal and now - terminal[0].closed_at > self._retention:
            del self._records[terminal.pop(0).key]
            evicted += 1
        while len(terminal) > self._max_retained:
            del self._records[terminal.pop(0).key]
            evicted += 1

        if evicted:
            self._counters["evicted"] += evicted
            logger.debug(f"Evicted {evicted} terminal request records")

    # =========================================================================
    # Readers (query interface)
    # =========================================================================

    @property
    def current_resolution_index(self) -> Optional[int]:
        """Selected index of the most recently observed request."""
        with self._lock:
            return self._current_index

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, key: RequestKey) -> Optional[RequestRecord]:
        with self._lock:
            record = self._records.get(key)
            return self._snapshot(record) if record else None

    def state_of(self, key: RequestKey) -> Optional[RequestState]:
        with self._lock:
            record = self._records.get(key)
            return record.state if record else None

    def require_open(self, key: RequestKey) -> RequestRecord:
        """
        Return the open record for `key`.

        Raises:
            TrackerStateError: If `key` is untracked or terminal
        """
        with self._lock:
            record = self._records.get(key)
            if record is None:
                raise TrackerStateError(key)
            if not record.is_open:
                raise TrackerStateError(key, record.state.value)
            return self._snapshot(record)

    def records(self, state: Optional[RequestState] = None) -> List[RequestRecord]:
        """Snapshots of tracked records, oldest first."""
        with self._lock:
            selected = [
                self._snapshot(r) for r in self._records.values()
                if state is None or r.state == state
            ]
        return sorted(selected, key=lambda r: (r.created_at, r.key))

    def stats(self) -> Dict[str, int]:
        """Record counts per state plus lifetime counters."""
        with self._lock:
            stats = {"tracked": len(self._records)}
            for state in RequestState:
                stats[state.value.lower()] = sum(
                    1 for r in self._records.values() if r.state == state
                )
            for name, count in self._counters.items():
                stats[f"{name}_total"] = count
            return stats

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: RecordListener) -> None:
        """Call `listener` with a snapshot whenever a record becomes terminal."""
        self._listeners.append(listener)

    def _notify(self, record: RequestRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error(f"Request listener failed for {record.key}: {e}")

    @staticmethod
    def _snapshot(record: RequestRecord) -> RequestRecord:
        return dataclasses.replace(record, responses=dict(record.responses))
