"""
FlightSurety Oracle Registry

Owns the pool of oracle identities and the index -> oracle lookup used to
decide who answers a request.

Registration Flow (per oracle):
    1. registerOracle() with the registration fee attached
    2. getMyIndexes() from the same account
    3. Insert the identity into all 3 of its index buckets

If registerOracle is rejected but getMyIndexes answers, an earlier attempt
already registered the account and its indices are reused, so a retry after
a half-finished registration succeeds.

Both ledger calls run under a single timeout. Each oracle is registered
independently: one failure never aborts the rest of the pool.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set
import logging

from pydantic import ValidationError

from ..exceptions import LedgerError, RegistrationError
from ..ledger.client import LedgerClient
from ..models import OracleIdentity, RegistrationReport


logger = logging.getLogger(__name__)


class OracleRegistry:
    """
    The pool of registered oracles.

    Invariant: the index buckets are the exact inverse of each identity's
    index set. Every mutation goes through `_insert`, which removes any
    previous buckets for the address first.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        registration_timeout_seconds: float = 10.0,
        registration_fee_wei: int = 10 ** 18,
        gas: int = 4_500_000,
    ):
        self._ledger = ledger
        self._timeout = registration_timeout_seconds
        self._fee = registration_fee_wei
        self._gas = gas

        self._oracles: Dict[str, OracleIdentity] = {}
        self._by_index: Dict[int, Set[str]] = defaultdict(set)

    def __len__(self) -> int:
        return len(self._oracles)

    def __contains__(self, address: object) -> bool:
        return address in self._oracles

    @property
    def oracles(self) -> List[OracleIdentity]:
        return list(self._oracles.values())

    def get(self, address: str) -> Optional[OracleIdentity]:
        return self._oracles.get(address)

    async def register(self, address: str) -> OracleIdentity:
        """
        Register one oracle account and record its indices.

        Args:
            address: Ledger account to register

        Returns:
            The registered OracleIdentity

        Raises:
            RegistrationError: If the ledger call fails, times out, or returns
                anything other than 3 distinct indices
        """
        try:
            indices = await asyncio.wait_for(
                self._request_indices(address),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise RegistrationError(address, f"timed out after {self._timeout}s") from e
        except LedgerError as e:
            raise RegistrationError(address, str(e)) from e

        try:
            identity = OracleIdentity(address=address, indices=frozenset(indices))
        except (ValidationError, TypeError) as e:
            raise RegistrationError(address, f"ledger returned bad indices {indices!r}") from e
        if len(list(indices)) != len(identity.indices):
            raise RegistrationError(address, f"ledger returned duplicate indices {indices!r}")

        self._insert(identity)
        logger.info(f"Oracle {address} registered with indices {sorted(identity.indices)}")
        return identity

    async def _request_indices(self, address: str) -> List[int]:
        try:
            await self._ledger.submit_transaction(
                "registerOracle",
                [],
                from_address=address,
                value=self._fee,
                gas=self._gas,
            )
        except LedgerError as register_error:
            # An earlier attempt may have been mined before its index read
            # failed; the account is then registered and only needs its indices
            try:
                indices = await self._read_indices(address)
            except LedgerError:
                raise register_error
            logger.info(f"Oracle {address} was already registered; reusing its indices")
            return indices
        return await self._read_indices(address)

    async def _read_indices(self, address: str) -> List[int]:
        indices = await self._ledger.call_read_only("getMyIndexes", [], from_address=address)
        if not isinstance(indices, (list, tuple)):
            raise LedgerError(f"getMyIndexes returned {indices!r}", "getMyIndexes")
        return list(indices)

    async def register_pool(self, addresses: Iterable[str]) -> RegistrationReport:
        """
        Register every address concurrently, collecting failures.

        Returns:
            RegistrationReport listing registered identities and per-address errors
        """
        addresses = list(addresses)
        results = await asyncio.gather(
            *(self.register(address) for address in addresses),
            return_exceptions=True,
        )

        report = RegistrationReport()
        for address, result in zip(addresses, results):
            if isinstance(result, OracleIdentity):
                report.registered.append(result)
            elif isinstance(result, RegistrationError):
                logger.warning(str(result))
                report.failures[address] = result.reason
            else:
                logger.error(f"Unexpected error registering oracle {address}: {result!r}")
                report.failures[address] = repr(result)

        logger.info(
            f"Oracle pool registration: {len(report.registered)}/{len(addresses)} registered, "
            f"{len(report.failures)} failed"
        )
        return report

    def eligible_for(self, index: int) -> Set[str]:
        """
        Addresses of oracles holding `index`.

        An empty set is an expected outcome when no oracle drew that index.
        """
        return set(self._by_index.get(index, ()))

    def index_map(self) -> Dict[int, Set[str]]:
        """Copy of the index -> addresses mapping (non-empty buckets only)."""
        return {index: set(holders) for index, holders in self._by_index.items() if holders}

    def coverage(self) -> Dict[int, int]:
        """Number of oracles per index."""
        return {index: len(holders) for index, holders in self.index_map().items()}

    def _insert(self, identity: OracleIdentity) -> None:
        previous = self._oracles.get(identity.address)
        if previous is not None:
            for index in previous.indices:
                holders = self._by_index.get(index)
                if holders is not None:
                    holders.discard(identity.address)
                    if not holders:
                        del self._by_index[index]

        self._oracles[identity.address] = identity
        for index in identity.indices:
            self._by_index[index].add(identity.address)
