"""
FlightSurety Oracle Service - Lifecycle and Query Interface

This module ties the oracle pool together into one owned service object:

    Ledger ──events──> EventDispatcher ──> RequestTracker
                             │
                             └──> ResponseSubmitter ──> OracleRegistry
                                        │
                                        └──transactions──> Ledger

Lifecycle:
    1. start(): open one subscription per topic (failure aborts startup),
       register the oracle pool (failures are collected, not fatal), then
       launch one task per subscription plus the expiry sweeper
    2. shutdown(): stop intake, let in-flight submissions finish or time
       out, then close the ledger (releasing its subscriptions)

Example:
    async with OracleService(config) as service:
        index = service.get_current_resolution_index()
"""

from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Any
import logging

from .config import OracleServiceConfig, get_config
from .core.dispatcher import EventDispatcher
from .core.registry import OracleRegistry
from .core.submitter import ResponseSubmitter, StatusPolicy
from .core.tracker import RecordListener, RequestTracker
from .exceptions import LedgerError, SubscriptionError
from .ledger.client import JsonRpcLedgerClient, LedgerClient
from .ledger.simulated import SimulatedLedger
from .models import (
    INFORMATIONAL_TOPICS,
    KNOWN_FLIGHTS,
    Flight,
    LedgerEvent,
    LedgerTopic,
    OracleIdentity,
    RegistrationReport,
    RequestKey,
    RequestRecord,
    RequestState,
)


logger = logging.getLogger(__name__)


SUBSCRIBED_TOPICS = (
    LedgerTopic.ORACLE_REQUEST,
    LedgerTopic.ORACLE_REPORT,
    LedgerTopic.FLIGHT_STATUS_INFO,
) + INFORMATIONAL_TOPICS


def build_ledger(config: OracleServiceConfig) -> LedgerClient:
    """Create the ledger client selected by configuration."""
    if config.ledger.simulated:
        logger.info("No ledger RPC URL configured; using the simulated ledger")
        return SimulatedLedger(
            num_accounts=config.pool.account_offset + config.pool.pool_size,
            index_space_size=config.pool.index_space_size,
            min_responses=config.ledger.min_responses,
            registration_fee_wei=config.pool.registration_fee_wei,
        )
    return JsonRpcLedgerClient(
        rpc_url=config.ledger.rpc_url,
        contract_address=config.ledger.contract_address,
        timeout_seconds=config.ledger.request_timeout_seconds,
        poll_interval_seconds=config.ledger.poll_interval_seconds,
        default_gas=config.pool.gas,
    )


class OracleService:
    """
    The oracle pool service.

    Owns the registry, tracker, dispatcher and submitter; nothing in the
    pool is reachable as module-level state.
    """

    def __init__(
        self,
        config: Optional[OracleServiceConfig] = None,
        ledger: Optional[LedgerClient] = None,
        policy: Optional[StatusPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the service.

        Args:
            config: Service configuration (defaults to the global config)
            ledger: Ledger client (defaults to one built from config)
            policy: Status code policy for generated responses
            clock: Time source shared by tracker and dispatcher
        """
        self._config = config or get_config()
        self._ledger = ledger or build_ledger(self._config)

        pool = self._config.pool
        tracking = self._config.tracker

        self.registry = OracleRegistry(
            self._ledger,
            registration_timeout_seconds=pool.registration_timeout_seconds,
            registration_fee_wei=pool.registration_fee_wei,
            gas=pool.gas,
        )
        self.tracker = RequestTracker(
            request_timeout_seconds=tracking.request_timeout_seconds,
            retention_window_seconds=tracking.retention_window_seconds,
            max_retained_records=tracking.max_retained_records,
            clock=clock,
        )
        self.submitter = ResponseSubmitter(
            self.registry,
            self._ledger,
            policy=policy,
            submission_timeout_seconds=pool.submission_timeout_seconds,
            gas=pool.gas,
        )
        self.dispatcher = EventDispatcher(
            self.tracker,
            self.submitter,
            report_grace_seconds=tracking.report_grace_seconds,
            clock=clock,
        )

        self.registration_report = RegistrationReport()
        self._stop: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def config(self) -> OracleServiceConfig:
        return self._config

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    @property
    def running(self) -> bool:
        return self._running

    async def __aenter__(self) -> "OracleService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Subscribe, register the pool and start processing events.

        Raises:
            SubscriptionError: If any topic subscription cannot be opened
        """
        if self._running:
            return

        validation = self._config.validate()
        for message in validation["messages"]:
            logger.warning(f"Config: {message}")

        self._stop = asyncio.Event()
        subscriptions = await self._open_subscriptions()

        addresses = await self._pool_accounts()
        self.registration_report = await self.registry.register_pool(addresses)

        for topic, events in subscriptions.items():
            self._tasks.append(asyncio.create_task(
                self.dispatcher.run(topic, events, self._stop),
                name=f"subscription-{topic}",
            ))
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name="expiry-sweeper"))

        self._running = True
        logger.info(
            f"Oracle service started: {len(self.registry)} oracles, "
            f"{len(subscriptions)} subscriptions"
        )

    async def _open_subscriptions(self) -> Dict[str, AsyncIterator[LedgerEvent]]:
        from_block = self._config.ledger.from_block
        subscriptions: Dict[str, AsyncIterator[LedgerEvent]] = {}
        for topic in SUBSCRIBED_TOPICS:
            try:
                subscriptions[topic.value] = await self._ledger.subscribe(topic.value, from_block)
            except LedgerError as e:
                logger.error(f"Cannot subscribe to {topic.value}; aborting startup: {e}")
                await self._ledger.close()
                raise SubscriptionError(topic.value, str(e)) from e
        return subscriptions

    async def _pool_accounts(self) -> List[str]:
        pool = self._config.pool
        try:
            accounts = await self._ledger.get_accounts()
        except LedgerError as e:
            logger.error(f"Cannot list ledger accounts; starting with an empty pool: {e}")
            return []

        addresses = accounts[pool.account_offset:pool.account_offset + pool.pool_size]
        if len(addresses) < pool.pool_size:
            logger.warning(
                f"Only {len(addresses)} accounts available for a pool of {pool.pool_size}"
            )
        return addresses

    async def _sweep_loop(self) -> None:
        interval = self._config.tracker.sweep_interval_seconds
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                self.tracker.sweep_expired()
                self.dispatcher.purge_pending()
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}")

    async def retry_registration(self, address: str) -> OracleIdentity:
        """
        Re-run registration for a single oracle.

        Raises:
            RegistrationError: If the ledger still refuses
        """
        identity = await self.registry.register(address)
        self.registration_report.failures.pop(address, None)
        self.registration_report.registered = [
            oracle for oracle in self.registration_report.registered if oracle.address != address
        ] + [identity]
        return identity

    async def shutdown(self) -> None:
        """Stop intake, drain in-flight submissions, release subscriptions."""
        if not self._running:
            return
        logger.info("Oracle service shutting down")

        self._stop.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.submitter.drain(timeout=self._config.pool.submission_timeout_seconds)
        await self._ledger.close()

        self._running = False
        logger.info("Oracle service stopped")

    def add_request_listener(self, listener: RecordListener) -> None:
        """Be told whenever a request resolves or expires."""
        self.tracker.add_listener(listener)

    # =========================================================================
    # Query interface
    # =========================================================================

    def get_current_resolution_index(self) -> Optional[int]:
        """Selected index of the latest observed request, or None."""
        return self.tracker.current_resolution_index

    def list_known_flights(self) -> List[Flight]:
        return list(KNOWN_FLIGHTS)

    def get_request(self, airline: str, flight: str, timestamp: int) -> Optional[RequestRecord]:
        return self.tracker.get(RequestKey(airline=airline, flight=flight, timestamp=timestamp))

    def list_requests(self, state: Optional[RequestState] = None) -> List[RequestRecord]:
        return self.tracker.records(state)

    def status(self) -> Dict[str, Any]:
        """Diagnostic snapshot of the pool."""
        return {
            "running": self._running,
            "pool_size": self._config.pool.pool_size,
            "registered_oracles": len(self.registry),
            "registration_failures": dict(self.registration_report.failures),
            "index_coverage": self.registry.coverage(),
            "current_resolution_index": self.get_current_resolution_index(),
            "tracker": self.tracker.stats(),
            "dispatcher": self.dispatcher.stats(),
            "submitter": self.submitter.stats(),
        }
