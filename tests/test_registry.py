"""
FlightSurety Oracles Test - Oracle Registry

Validates:
- Every registered oracle holds exactly 3 indices
- The index -> oracle mapping is the exact inverse of oracle -> indices
- eligible_for() returns an empty set, never an error, for unheld indices
- One failing registration never aborts the rest of the pool
"""

import asyncio
import pytest
from collections import defaultdict
from unittest.mock import AsyncMock

from flightsurety_oracles.core.registry import OracleRegistry
from flightsurety_oracles.exceptions import LedgerError, RegistrationError
from flightsurety_oracles.ledger.client import Receipt


def invert(registry: OracleRegistry):
    """Build index -> addresses from each identity's own index set."""
    expected = defaultdict(set)
    for oracle in registry.oracles:
        for index in oracle.indices:
            expected[index].add(oracle.address)
    return dict(expected)


def mock_ledger(indices):
    """Ledger whose getMyIndexes returns `indices`."""
    ledger = AsyncMock()
    ledger.submit_transaction.return_value = Receipt(tx_hash="0xabc", block_number=1)
    ledger.call_read_only.return_value = indices
    return ledger


# =============================================================================
# POOL REGISTRATION
# =============================================================================

class TestPoolRegistration:
    """Registering the full pool against the simulated ledger."""

    @pytest.mark.asyncio
    async def test_every_oracle_gets_three_indices(self, registry, pool_accounts):
        report = await registry.register_pool(pool_accounts)

        assert len(report.registered) == 20
        assert report.failures == {}
        assert len(registry) == 20
        for oracle in registry.oracles:
            assert len(oracle.indices) == 3
            assert all(0 <= i < 10 for i in oracle.indices)

    @pytest.mark.asyncio
    async def test_index_map_is_inverse_of_oracle_indices(self, registry, pool_accounts):
        await registry.register_pool(pool_accounts)

        assert registry.index_map() == invert(registry)
        for index, holders in registry.index_map().items():
            assert registry.eligible_for(index) == holders

    @pytest.mark.asyncio
    async def test_indices_match_ledger_assignment(self, registry, ledger, pool_accounts):
        await registry.register_pool(pool_accounts)

        for address in pool_accounts:
            assert registry.get(address).indices == frozenset(ledger.oracles[address])

    @pytest.mark.asyncio
    async def test_registration_pays_fee(self, ledger, pool_accounts):
        cheap = OracleRegistry(ledger, registration_fee_wei=1)

        report = await cheap.register_pool(pool_accounts[:2])

        assert report.registered == []
        assert set(report.failures) == set(pool_accounts[:2])
        assert "fee" in report.failures[pool_accounts[0]]


# =============================================================================
# ELIGIBILITY LOOKUP
# =============================================================================

class TestEligibility:
    """eligible_for() lookups."""

    def test_empty_registry_has_no_eligible_oracles(self, registry):
        assert registry.eligible_for(4) == set()

    @pytest.mark.asyncio
    async def test_unheld_index_returns_empty_set(self, registry, pool_accounts):
        await registry.register_pool(pool_accounts)

        # The ledger only assigns indices below 10
        assert registry.eligible_for(200) == set()
        assert 200 not in registry.index_map()

    @pytest.mark.asyncio
    async def test_returned_set_is_a_copy(self, registry, pool_accounts):
        await registry.register_pool(pool_accounts)
        index = next(iter(registry.oracles[0].indices))

        holders = registry.eligible_for(index)
        holders.clear()

        assert registry.eligible_for(index)

    @pytest.mark.asyncio
    async def test_coverage_counts_holders(self, registry, pool_accounts):
        await registry.register_pool(pool_accounts)

        coverage = registry.coverage()

        # 20 oracles x 3 indices
        assert sum(coverage.values()) == 60


# =============================================================================
# FAILURE HANDLING
# =============================================================================

class TestRegistrationFailures:
    """Per-oracle failure isolation."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_pool(self, registry, ledger, pool_accounts):
        broken = pool_accounts[3]
        ledger.fail_registration_for.add(broken)

        report = await registry.register_pool(pool_accounts)

        assert len(report.registered) == 19
        assert list(report.failures) == [broken]
        assert broken not in registry
        assert report.attempted == 20

    @pytest.mark.asyncio
    async def test_failed_oracle_can_retry_alone(self, registry, ledger, pool_accounts):
        broken = pool_accounts[0]
        ledger.fail_registration_for.add(broken)
        await registry.register_pool(pool_accounts)

        ledger.fail_registration_for.clear()
        identity = await registry.register(broken)

        assert broken in registry
        assert len(identity.indices) == 3
        assert registry.index_map() == invert(registry)

    @pytest.mark.asyncio
    async def test_timeout_raises_registration_error(self, ledger, pool_accounts):
        ledger.registration_delay = 0.5
        registry = OracleRegistry(ledger, registration_timeout_seconds=0.05)

        with pytest.raises(RegistrationError) as exc_info:
            await registry.register(pool_accounts[0])

        assert exc_info.value.address == pool_accounts[0]
        assert "timed out" in exc_info.value.reason
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_ledger_error_raises_registration_error(self):
        ledger = mock_ledger([1, 2, 3])
        ledger.submit_transaction.side_effect = LedgerError("reverted", "registerOracle")
        ledger.call_read_only.side_effect = LedgerError("Not registered as an oracle", "getMyIndexes")
        registry = OracleRegistry(ledger)

        with pytest.raises(RegistrationError) as exc_info:
            await registry.register("0xoracle")

        # The registerOracle failure is the one reported
        assert "reverted" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_retry_after_half_finished_registration(self, registry, ledger, pool_accounts):
        oracle = pool_accounts[0]
        read_indices = ledger.call_read_only
        failures = [LedgerError("gateway timeout", "getMyIndexes")]

        async def flaky_read(method, args=(), from_address=None):
            if failures:
                raise failures.pop()
            return await read_indices(method, args, from_address)

        ledger.call_read_only = flaky_read

        # registerOracle is mined, the index read fails
        with pytest.raises(RegistrationError):
            await registry.register(oracle)
        assert oracle in ledger.oracles

        identity = await registry.register(oracle)

        assert identity.indices == frozenset(ledger.oracles[oracle])
        assert registry.index_map() == invert(registry)

    @pytest.mark.asyncio
    async def test_already_registered_account_reuses_indices(self):
        ledger = mock_ledger([4, 5, 6])
        ledger.submit_transaction.side_effect = LedgerError("Oracle already registered", "registerOracle")
        registry = OracleRegistry(ledger)

        identity = await registry.register("0xoracle")

        assert identity.indices == frozenset({4, 5, 6})
        assert registry.eligible_for(5) == {"0xoracle"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("indices", [[1, 1, 2], [1, 2], [1, 2, 3, 4], [1, 2, 999], "123"])
    async def test_malformed_indices_rejected(self, indices):
        registry = OracleRegistry(mock_ledger(indices))

        with pytest.raises(RegistrationError):
            await registry.register("0xoracle")

        assert len(registry) == 0
        assert registry.index_map() == {}

    @pytest.mark.asyncio
    async def test_reregistration_leaves_no_orphans(self):
        ledger = mock_ledger([1, 2, 3])
        registry = OracleRegistry(ledger)
        await registry.register("0xoracle")

        ledger.call_read_only.return_value = [3, 4, 5]
        await registry.register("0xoracle")

        assert registry.eligible_for(1) == set()
        assert registry.eligible_for(2) == set()
        assert registry.eligible_for(3) == {"0xoracle"}
        assert registry.index_map() == invert(registry)

    @pytest.mark.asyncio
    async def test_registrations_run_concurrently(self, ledger, pool_accounts):
        ledger.registration_delay = 0.05
        registry = OracleRegistry(ledger, registration_timeout_seconds=1.0)

        loop = asyncio.get_running_loop()
        started = loop.time()
        await registry.register_pool(pool_accounts)
        elapsed = loop.time() - started

        assert len(registry) == 20
        # Sequential registration would take ~1s
        assert elapsed < 0.5
