"""
FlightSurety Simulated Ledger

In-memory stand-in for the FlightSurety app contract, used for development,
tests and local runs without a node.

It mirrors the contract surface the oracle service touches:
    - registerOracle (payable): assigns 3 distinct pseudo-random indices
    - getMyIndexes (view): returns the caller's indices
    - fetchFlightStatus: opens a request under a random index, emits OracleRequest
    - submitOracleResponse: accepts a response from an oracle holding the
      request's index, emits OracleReport, and emits FlightStatusInfo once
      `min_responses` oracles agree

Why Simulate?
    - Deterministic testing (seeded RNG)
    - Fault injection for registration and submission failures
    - Ability to deliver arbitrary raw events through `emit_event`
"""

from __future__ import annotations

import asyncio
import hashlib
import random
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple
import logging

from ..exceptions import LedgerError
from ..models import LedgerEvent, LedgerTopic
from .client import LedgerClient, Receipt


logger = logging.getLogger(__name__)


_END_OF_STREAM = None


class _Subscription:
    """Queue-backed async iterator for one topic."""

    def __init__(self, topic: str):
        self.topic = topic
        self.queue: "asyncio.Queue[Optional[LedgerEvent]]" = asyncio.Queue()

    def __aiter__(self) -> "_Subscription":
        return self

    async def __anext__(self) -> LedgerEvent:
        event = await self.queue.get()
        if event is _END_OF_STREAM:
            raise StopAsyncIteration
        return event


class SimulatedLedger(LedgerClient):
    """
    In-memory FlightSurety ledger.

    Every transaction is mined into its own block; events emitted by a
    transaction share the block and get increasing log indices.
    """

    REGISTRATION_FEE_WEI = 10 ** 18

    def __init__(
        self,
        num_accounts: int = 50,
        index_space_size: int = 10,
        min_responses: int = 3,
        registration_fee_wei: int = REGISTRATION_FEE_WEI,
        seed: Optional[int] = None,
    ):
        """
        Initialize the simulated ledger.

        Args:
            num_accounts: Number of unlocked accounts to expose
            index_space_size: Indices are drawn from [0, index_space_size)
            min_responses: Agreeing responses needed to resolve a request
            registration_fee_wei: Value registerOracle must carry
            seed: RNG seed for reproducible index assignment
        """
        if index_space_size < 3:
            raise ValueError("index_space_size must allow 3 distinct indices")

        self.index_space_size = index_space_size
        self.min_responses = min_responses
        self.registration_fee_wei = registration_fee_wei

        self._rng = random.Random(seed)
        self._accounts = [self._make_address(i) for i in range(num_accounts)]
        self._block_number = 0
        self._tx_count = 0
        self._history: List[LedgerEvent] = []
        self._subscriptions: List[_Subscription] = []
        self._closed = False

        # Contract state
        self.oracles: Dict[str, List[int]] = {}
        # (index, airline, flight, timestamp) -> {"open": bool, "responses": {status: [oracle]}}
        self.requests: Dict[Tuple[int, str, str, int], Dict[str, Any]] = {}

        # Fault injection
        self.fail_registration_for: Set[str] = set()
        self.fail_submission_for: Set[str] = set()
        self.fail_subscription_for: Set[str] = set()
        self.registration_delay: float = 0.0
        self.submission_delay: float = 0.0
        # Fixed index assignments by account, used instead of random draws
        self.assigned_indices: Dict[str, List[int]] = {}

        # Audit trail of submitOracleResponse calls (accepted or not)
        self.submissions: List[Dict[str, Any]] = []

    @staticmethod
    def _make_address(i: int) -> str:
        return "0x" + hashlib.sha256(f"account-{i}".encode()).hexdigest()[:40]

    @property
    def block_number(self) -> int:
        return self._block_number

    # =========================================================================
    # LedgerClient interface
    # =========================================================================

    async def get_accounts(self) -> List[str]:
        return list(self._accounts)

    async def submit_transaction(
        self,
        method: str,
        args: Sequence[Any],
        from_address: str,
        value: int = 0,
        gas: Optional[int] = None,
    ) -> Receipt:
        self._ensure_open()
        handlers = {
            "registerOracle": self._register_oracle,
            "submitOracleResponse": self._submit_oracle_response,
            "fetchFlightStatus": self._fetch_flight_status,
        }
        handler = handlers.get(method)
        if handler is None:
            raise LedgerError(f"Unknown contract method {method}", method)

        self._tx_count += 1
        tx_hash = "0x" + hashlib.sha256(
            f"{self._tx_count}:{method}:{from_address}".encode()
        ).hexdigest()
        events: List[LedgerEvent] = []
        await handler(list(args), from_address, value, events, tx_hash)

        if events:
            block = events[0].block_number
        else:
            self._block_number += 1
            block = self._block_number
        return Receipt(tx_hash=tx_hash, block_number=block, events=events)

    async def call_read_only(
        self,
        method: str,
        args: Sequence[Any] = (),
        from_address: Optional[str] = None,
    ) -> Any:
        self._ensure_open()
        if method == "getMyIndexes":
            if from_address not in self.oracles:
                raise LedgerError("Not registered as an oracle", method)
            return list(self.oracles[from_address])
        if method == "REGISTRATION_FEE":
            return self.registration_fee_wei
        raise LedgerError(f"Unknown view method {method}", method)

    async def subscribe(self, topic: str, from_block: int = 0) -> AsyncIterator[LedgerEvent]:
        self._ensure_open()
        if topic in self.fail_subscription_for:
            raise LedgerError(f"Subscription to {topic} refused", "subscribe")

        subscription = _Subscription(topic)
        for event in self._history:
            if event.topic == topic and event.block_number >= from_block:
                subscription.queue.put_nowait(event)
        self._subscriptions.append(subscription)
        return subscription

    async def close(self) -> None:
        self._closed = True
        for subscription in self._subscriptions:
            subscription.queue.put_nowait(_END_OF_STREAM)
        self._subscriptions.clear()

    # =========================================================================
    # Simulation helpers
    # =========================================================================

    def emit_event(self, topic: str, payload: Dict[str, Any]) -> LedgerEvent:
        """Mine a block carrying a single raw event (for tests and demos)."""
        return self._emit(topic, payload, [], None)

    async def request_flight_status(
        self,
        airline: str,
        flight: str,
        timestamp: int,
        index: Optional[int] = None,
    ) -> LedgerEvent:
        """
        Open an oracle request the way a passenger dapp would.

        Args:
            index: Force the selected index instead of drawing one

        Returns:
            The emitted OracleRequest event
        """
        args: List[Any] = [airline, flight, timestamp]
        if index is not None:
            args.append(index)
        receipt = await self.submit_transaction("fetchFlightStatus", args, airline)
        return receipt.events[0]

    # =========================================================================
    # Contract methods
    # =========================================================================

    def _ensure_open(self) -> None:
        if self._closed:
            raise LedgerError("Ledger connection closed")

    def _emit(
        self,
        topic: str,
        payload: Dict[str, Any],
        events: List[LedgerEvent],
        tx_hash: Optional[str],
    ) -> LedgerEvent:
        # A transaction is mined into a block when it first emits
        if events:
            block = events[0].block_number
        else:
            self._block_number += 1
            block = self._block_number
        event = LedgerEvent(
            topic=topic,
            block_number=block,
            log_index=len(events),
            payload=dict(payload),
            tx_hash=tx_hash,
        )
        events.append(event)
        self._history.append(event)
        for subscription in self._subscriptions:
            if subscription.topic == topic:
                subscription.queue.put_nowait(event)
        return event

    def _generate_indices(self) -> List[int]:
        return self._rng.sample(range(self.index_space_size), 3)

    async def _register_oracle(self, args, sender, value, events, tx_hash) -> None:
        if self.registration_delay:
            await asyncio.sleep(self.registration_delay)
        if sender in self.fail_registration_for:
            raise LedgerError("registerOracle reverted", "registerOracle")
        if value < self.registration_fee_wei:
            raise LedgerError("Registration fee is required", "registerOracle")
        if sender in self.oracles:
            raise LedgerError("Oracle already registered", "registerOracle")
        assigned = self.assigned_indices.get(sender)
        self.oracles[sender] = list(assigned) if assigned else self._generate_indices()

    async def _fetch_flight_status(self, args, sender, value, events, tx_hash) -> None:
        airline, flight, timestamp = args[0], args[1], int(args[2])
        index = int(args[3]) if len(args) > 3 else self._rng.randrange(self.index_space_size)
        self.requests[(index, airline, flight, timestamp)] = {
            "open": True,
            "requester": sender,
            "responses": {},
        }
        self._emit(
            LedgerTopic.ORACLE_REQUEST.value,
            {"index": index, "airline": airline, "flight": flight, "timestamp": timestamp},
            events,
            tx_hash,
        )

    async def _submit_oracle_response(self, args, sender, value, events, tx_hash) -> None:
        index, airline, flight, timestamp, status = (
            int(args[0]), args[1], args[2], int(args[3]), int(args[4])
        )
        self.submissions.append({
            "oracle": sender, "index": index, "airline": airline,
            "flight": flight, "timestamp": timestamp, "status": status,
        })

        if self.submission_delay:
            await asyncio.sleep(self.submission_delay)
        if sender in self.fail_submission_for:
            raise LedgerError("submitOracleResponse reverted", "submitOracleResponse")
        if index not in self.oracles.get(sender, []):
            raise LedgerError("Index does not match oracle request", "submitOracleResponse")

        request = self.requests.get((index, airline, flight, timestamp))
        if request is None or not request["open"]:
            raise LedgerError(
                "Flight or timestamp do not match oracle request", "submitOracleResponse"
            )

        agreeing = request["responses"].setdefault(status, [])
        agreeing.append(sender)
        payload = {
            "airline": airline, "flight": flight, "timestamp": timestamp,
            "status": status, "oracle": sender,
        }
        self._emit(LedgerTopic.ORACLE_REPORT.value, payload, events, tx_hash)

        if len(agreeing) >= self.min_responses:
            request["open"] = False
            self._emit(
                LedgerTopic.FLIGHT_STATUS_INFO.value,
                {"airline": airline, "flight": flight, "timestamp": timestamp, "status": status},
                events,
                tx_hash,
            )
            logger.debug(
                f"Request {airline}/{flight}/{timestamp} resolved with status {status}"
            )
