"""
FlightSurety Oracles Test - Event Dispatcher

Validates:
- Raw ledger logs decode into typed events, malformed ones raise DecodeError
- Request events reach the tracker and trigger responses
- Reports delivered before their request are buffered and replayed in order
- One bad event never stops the subscription loop
"""

import asyncio
import pytest
from unittest.mock import MagicMock

from flightsurety_oracles.core.dispatcher import EventDispatcher, decode_event
from flightsurety_oracles.core.submitter import FixedStatusPolicy, ResponseSubmitter
from flightsurety_oracles.exceptions import DecodeError
from flightsurety_oracles.models import (
    FlightStatusInfoEvent,
    InformationalEvent,
    LedgerEvent,
    OracleReportEvent,
    OracleRequestEvent,
    RequestKey,
    RequestState,
    StatusCode,
)


AIRLINE_A = "0xairlineA"
KEY = RequestKey(airline=AIRLINE_A, flight="AS1234", timestamp=1000)


def request_log(block, index=4, key=KEY):
    return LedgerEvent(
        topic="OracleRequest",
        block_number=block,
        payload={"index": index, "airline": key.airline, "flight": key.flight, "timestamp": key.timestamp},
    )


def report_log(block, oracle, status=20, key=KEY, log_index=0):
    return LedgerEvent(
        topic="OracleReport",
        block_number=block,
        log_index=log_index,
        payload={
            "airline": key.airline, "flight": key.flight, "timestamp": key.timestamp,
            "status": status, "oracle": oracle,
        },
    )


def resolution_log(block, status=20, key=KEY):
    return LedgerEvent(
        topic="FlightStatusInfo",
        block_number=block,
        payload={"airline": key.airline, "flight": key.flight, "timestamp": key.timestamp, "status": status},
    )


@pytest.fixture
def submitter(registry, ledger):
    return ResponseSubmitter(
        registry, ledger, policy=FixedStatusPolicy(StatusCode.LATE_AIRLINE),
        submission_timeout_seconds=1.0,
    )


@pytest.fixture
def dispatcher(tracker, submitter, clock):
    return EventDispatcher(tracker, submitter, report_grace_seconds=5.0, clock=clock)


# =============================================================================
# DECODING
# =============================================================================

class TestDecode:
    """decode_event()"""

    def test_request(self):
        event = decode_event(request_log(3, index=7))

        assert isinstance(event, OracleRequestEvent)
        assert event.key == KEY
        assert event.index == 7
        assert event.sequence == (3, 0)

    def test_report_with_string_values(self):
        raw = LedgerEvent(
            topic="OracleReport",
            block_number=5,
            payload={"airline": AIRLINE_A, "flight": "AS1234", "timestamp": "1000", "status": "20"},
            tx_hash="0xfeed",
        )

        event = decode_event(raw)

        assert isinstance(event, OracleReportEvent)
        assert event.key == KEY
        assert event.status == StatusCode.LATE_AIRLINE
        assert event.oracle == "tx:0xfeed"

    def test_status_code_alias(self):
        raw = LedgerEvent(
            topic="FlightStatusInfo",
            block_number=5,
            payload={"airline": AIRLINE_A, "flight": "AS1234", "timestamp": 1000, "statusCode": 10},
        )

        event = decode_event(raw)

        assert isinstance(event, FlightStatusInfoEvent)
        assert event.status == StatusCode.ON_TIME

    def test_informational_topic(self):
        raw = LedgerEvent(topic="AirlinesFunded", block_number=2, payload={"airline": AIRLINE_A})

        event = decode_event(raw)

        assert isinstance(event, InformationalEvent)
        assert event.payload == {"airline": AIRLINE_A}

    @pytest.mark.parametrize("raw", [
        LedgerEvent(topic="SomethingElse", block_number=1),
        LedgerEvent(topic="OracleRequest", block_number=1, payload={"airline": AIRLINE_A}),
        LedgerEvent(topic="OracleRequest", block_number=1, payload={
            "index": "four", "airline": AIRLINE_A, "flight": "AS1234", "timestamp": 1000}),
        LedgerEvent(topic="OracleReport", block_number=1, payload={
            "airline": AIRLINE_A, "flight": "AS1234", "timestamp": 1000, "status": 25}),
        LedgerEvent(topic="FlightStatusInfo", block_number=1, payload={
            "airline": AIRLINE_A, "flight": "", "timestamp": 1000, "status": 20}),
    ])
    def test_malformed_payloads(self, raw):
        with pytest.raises(DecodeError):
            decode_event(raw)


# =============================================================================
# ROUTING
# =============================================================================

class TestRouting:
    """handle() routing to tracker and submitter."""

    @pytest.mark.asyncio
    async def test_request_triggers_responses_from_eligible_oracles(
        self, dispatcher, registry, submitter, ledger, tracker, pool_accounts
    ):
        await registry.register_pool(pool_accounts)
        raw = await ledger.request_flight_status(AIRLINE_A, "AS1234", 1000, index=4)

        await dispatcher.handle(raw)
        await submitter.drain()

        assert tracker.get(KEY).state == RequestState.OPEN
        assert {s["oracle"] for s in ledger.submissions} == registry.eligible_for(4)

    @pytest.mark.asyncio
    async def test_reports_update_tracker(self, dispatcher, tracker):
        await dispatcher.handle(request_log(1))
        await dispatcher.handle(report_log(2, "0xoracle1"))
        await dispatcher.handle(report_log(3, "0xoracle2", status=30))

        responses = tracker.get(KEY).responses
        assert responses == {"0xoracle1": StatusCode.LATE_AIRLINE, "0xoracle2": StatusCode.LATE_WEATHER}

    @pytest.mark.asyncio
    async def test_resolution_closes_request(self, dispatcher, tracker):
        await dispatcher.handle(request_log(1))
        await dispatcher.handle(resolution_log(4))

        record = tracker.get(KEY)
        assert record.state == RequestState.RESOLVED
        assert record.resolved_status == StatusCode.LATE_AIRLINE

    @pytest.mark.asyncio
    async def test_second_resolution_is_discarded(self, dispatcher, tracker):
        await dispatcher.handle(request_log(1))
        await dispatcher.handle(resolution_log(4))
        await dispatcher.handle(resolution_log(5, status=10))

        assert tracker.get(KEY).resolved_status == StatusCode.LATE_AIRLINE
        assert dispatcher.stats()["state_errors"] == 1

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_ignored(self, dispatcher, tracker):
        await dispatcher.handle(request_log(1))
        await dispatcher.handle(report_log(2, "0xoracle1", status=20))
        await dispatcher.handle(report_log(3, "0xoracle1", status=40))
        await dispatcher.handle(report_log(2, "0xoracle1", status=20))

        assert tracker.get(KEY).responses == {"0xoracle1": StatusCode.LATE_TECHNICAL}
        assert dispatcher.stats()["duplicates"] == 1


# =============================================================================
# OUT-OF-ORDER DELIVERY
# =============================================================================

class TestOutOfOrderDelivery:
    """Reports and resolutions arriving before their request."""

    @pytest.mark.asyncio
    async def test_report_before_request_is_replayed(self, dispatcher, tracker):
        await dispatcher.handle(report_log(6, "0xoracle1"))

        assert tracker.get(KEY) is None
        assert dispatcher.stats()["pending"] == 1

        await dispatcher.handle(request_log(5))

        assert tracker.get(KEY).responses == {"0xoracle1": StatusCode.LATE_AIRLINE}
        assert dispatcher.stats()["pending"] == 0
        assert dispatcher.stats()["replayed"] == 1

    @pytest.mark.asyncio
    async def test_buffered_events_replay_in_sequence_order(self, dispatcher, tracker):
        await dispatcher.handle(report_log(7, "0xoracle1", status=40))
        await dispatcher.handle(report_log(6, "0xoracle1", status=20))

        await dispatcher.handle(request_log(5))

        # Block 7 was emitted last, so it wins
        assert tracker.get(KEY).responses == {"0xoracle1": StatusCode.LATE_TECHNICAL}

    @pytest.mark.asyncio
    async def test_buffered_resolution_skips_responses(self, dispatcher, submitter, tracker):
        await dispatcher.handle(report_log(6, "0xoracle1"))
        await dispatcher.handle(resolution_log(7))

        await dispatcher.handle(request_log(5))
        await submitter.drain()

        record = tracker.get(KEY)
        assert record.state == RequestState.RESOLVED
        assert record.responses == {"0xoracle1": StatusCode.LATE_AIRLINE}
        assert submitter.stats()["requests"] == 0

    @pytest.mark.asyncio
    async def test_quorum_report_delivered_after_resolution_is_kept(self, dispatcher, tracker):
        await dispatcher.handle(request_log(5))
        await dispatcher.handle(report_log(7, "0xoracle1"))
        await dispatcher.handle(report_log(8, "0xoracle2"))
        # Same transaction: report at log 0, resolution at log 1
        await dispatcher.handle(LedgerEvent(
            topic="FlightStatusInfo",
            block_number=9,
            log_index=1,
            payload={"airline": AIRLINE_A, "flight": "AS1234", "timestamp": 1000, "status": 20},
        ))
        await dispatcher.handle(report_log(9, "0xoracle3", log_index=0))

        record = tracker.get(KEY)
        assert record.state == RequestState.RESOLVED
        assert set(record.responses) == {"0xoracle1", "0xoracle2", "0xoracle3"}
        assert record.late_reports == 0

    @pytest.mark.asyncio
    async def test_report_emitted_after_resolution_is_late(self, dispatcher, tracker):
        await dispatcher.handle(request_log(5))
        await dispatcher.handle(resolution_log(9))
        await dispatcher.handle(report_log(10, "0xoracle4"))

        record = tracker.get(KEY)
        assert record.responses == {}
        assert record.late_reports == 1

    @pytest.mark.asyncio
    async def test_stale_buffered_report_is_discarded(self, dispatcher, tracker, clock):
        await dispatcher.handle(report_log(6, "0xoracle1"))

        assert dispatcher.purge_pending(clock.now + 5) == 0
        assert dispatcher.purge_pending(clock.now + 6) == 1

        await dispatcher.handle(request_log(5))

        assert tracker.get(KEY).responses == {}
        assert dispatcher.stats()["discarded_pending"] == 1


# =============================================================================
# FAILURE ISOLATION
# =============================================================================

class TestFailureIsolation:
    """Per-event error handling."""

    @pytest.mark.asyncio
    async def test_decode_error_is_counted_not_raised(self, dispatcher):
        await dispatcher.handle(LedgerEvent(topic="OracleRequest", block_number=1, payload={}))

        assert dispatcher.stats()["decode_errors"] == 1
        assert dispatcher.stats()["handled"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_counted_not_raised(self, submitter, clock):
        tracker = MagicMock()
        tracker.state_of.side_effect = RuntimeError("boom")
        dispatcher = EventDispatcher(tracker, submitter, clock=clock)

        await dispatcher.handle(report_log(2, "0xoracle1"))

        assert dispatcher.stats()["handler_errors"] == 1

    @pytest.mark.asyncio
    async def test_run_survives_bad_events(self, dispatcher, tracker):
        events = [
            request_log(1),
            LedgerEvent(topic="OracleReport", block_number=2, payload={"status": 99}),
            report_log(3, "0xoracle1"),
            LedgerEvent(topic="Unknown", block_number=4),
            report_log(5, "0xoracle2"),
        ]

        async def stream():
            for event in events:
                yield event

        await dispatcher.run("mixed", stream(), asyncio.Event())

        assert set(tracker.get(KEY).responses) == {"0xoracle1", "0xoracle2"}
        assert dispatcher.stats()["decode_errors"] == 2

    @pytest.mark.asyncio
    async def test_run_stops_when_signalled(self, dispatcher, tracker):
        stop = asyncio.Event()

        async def stream():
            yield request_log(1)
            stop.set()
            yield report_log(2, "0xoracle1")

        await dispatcher.run("requests", stream(), stop)

        assert tracker.get(KEY).responses == {}
