"""
FlightSurety Response Submitter

Answers an oracle request on behalf of every eligible oracle in the pool.

Logic Flow:
    1. Look up the oracles holding the request's selected index
    2. IF none -> log and stop (a valid outcome of random index assignment)
    3. ELSE -> one submitOracleResponse per oracle, all issued concurrently

Submission is fire-and-forget per oracle: a rejected transaction, timeout or
transport error for one oracle is logged and never blocks, retries or fails
the others. At most one attempt is made per (request, oracle) per request
event.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Set
import logging

from ..exceptions import LedgerError, SubmissionError
from ..ledger.client import LedgerClient
from ..models import RequestKey, StatusCode, SubmissionResult
from .registry import OracleRegistry


logger = logging.getLogger(__name__)


# =============================================================================
# STATUS POLICIES
# =============================================================================

class StatusPolicy(ABC):
    """Chooses the status code an oracle reports for a request."""

    @abstractmethod
    def choose(self, oracle: str, key: RequestKey, index: int) -> StatusCode:
        pass


class FixedStatusPolicy(StatusPolicy):
    """Every oracle reports the same code."""

    def __init__(self, status: StatusCode = StatusCode.LATE_AIRLINE):
        self.status = status

    def choose(self, oracle: str, key: RequestKey, index: int) -> StatusCode:
        return self.status


class RandomStatusPolicy(StatusPolicy):
    """
    Each oracle reports a pseudo-random code.

    Seed it for reproducible simulations.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        choices: Sequence[StatusCode] = tuple(StatusCode),
    ):
        if not choices:
            raise ValueError("RandomStatusPolicy needs at least one status code")
        self._rng = random.Random(seed)
        self._choices = list(choices)

    def choose(self, oracle: str, key: RequestKey, index: int) -> StatusCode:
        return self._rng.choice(self._choices)


# =============================================================================
# SUBMITTER
# =============================================================================

class ResponseSubmitter:
    """Fans out one response transaction per eligible oracle."""

    def __init__(
        self,
        registry: OracleRegistry,
        ledger: LedgerClient,
        policy: Optional[StatusPolicy] = None,
        submission_timeout_seconds: float = 10.0,
        gas: int = 4_500_000,
    ):
        """
        Initialize the submitter.

        Args:
            registry: Pool used to resolve eligible oracles
            ledger: Ledger client the responses are sent through
            policy: Status code policy (defaults to random codes)
            submission_timeout_seconds: Per-transaction timeout
            gas: Gas limit for each response transaction
        """
        self._registry = registry
        self._ledger = ledger
        self._policy = policy or RandomStatusPolicy()
        self._timeout = submission_timeout_seconds
        self._gas = gas

        self._in_flight: Set[asyncio.Task] = set()
        self._counters: Dict[str, int] = {
            "requests": 0,
            "no_eligible_oracles": 0,
            "submitted": 0,
            "succeeded": 0,
            "failed": 0,
        }

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def stats(self) -> Dict[str, int]:
        return {**self._counters, "in_flight": len(self._in_flight)}

    def schedule(self, key: RequestKey, index: int) -> "asyncio.Task[List[SubmissionResult]]":
        """
        Start responding to a request in the background.

        The caller does not wait for the submissions; `drain()` does.
        """
        task = asyncio.create_task(self.respond(key, index))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def respond(self, key: RequestKey, index: int) -> List[SubmissionResult]:
        """
        Submit one response per oracle eligible for `index`.

        Returns:
            One SubmissionResult per eligible oracle (empty if none are eligible)
        """
        self._counters["requests"] += 1
        eligible = sorted(self._registry.eligible_for(index))

        if not eligible:
            self._counters["no_eligible_oracles"] += 1
            logger.info(f"No oracle in the pool holds index {index}; request {key} unanswered")
            return []

        logger.info(f"Submitting {len(eligible)} responses for {key} (index {index})")

        # All submissions start before any is awaited
        outcomes = await asyncio.gather(
            *(self._submit_one(oracle, key, index) for oracle in eligible),
            return_exceptions=True,
        )

        results: List[SubmissionResult] = []
        for oracle, outcome in zip(eligible, outcomes):
            if isinstance(outcome, SubmissionResult):
                results.append(outcome)
            else:
                logger.error(f"Unexpected failure submitting for oracle {oracle}: {outcome!r}")
                self._counters["failed"] += 1
                results.append(SubmissionResult(
                    oracle=oracle,
                    key=key,
                    status=StatusCode.UNKNOWN,
                    success=False,
                    error=repr(outcome),
                ))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Request {key}: {succeeded}/{len(results)} oracle responses accepted")
        return results

    async def _submit_one(self, oracle: str, key: RequestKey, index: int) -> SubmissionResult:
        status = self._policy.choose(oracle, key, index)
        self._counters["submitted"] += 1

        try:
            receipt = await asyncio.wait_for(
                self._ledger.submit_transaction(
                    "submitOracleResponse",
                    [index, key.airline, key.flight, key.timestamp, int(status)],
                    from_address=oracle,
                    gas=self._gas,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            error = SubmissionError(oracle, key, f"timed out after {self._timeout}s")
        except LedgerError as e:
            error = SubmissionError(oracle, key, str(e))
        else:
            self._counters["succeeded"] += 1
            logger.debug(f"Oracle {oracle} reported {status.name} for {key} in {receipt.tx_hash}")
            return SubmissionResult(
                oracle=oracle, key=key, status=status, success=True, tx_hash=receipt.tx_hash,
            )

        self._counters["failed"] += 1
        logger.warning(str(error))
        return SubmissionResult(
            oracle=oracle, key=key, status=status, success=False, error=error.reason,
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Wait for in-flight submissions to finish.

        Submissions still running after `timeout` are cancelled.
        """
        pending = set(self._in_flight)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} response batches at shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)
