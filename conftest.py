"""
FlightSurety Oracles - pytest Configuration

Shared fixtures and configuration for all tests.
"""

import pytest
import sys
import os

# Add the project root to path for imports
sys.path.insert(0, os.path.dirname(__file__))


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires a live ledger gateway)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection based on markers."""
    # Skip integration tests by default unless explicitly requested
    if not config.getoption("--run-integration", default=False):
        skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="run integration tests that require a live ledger gateway"
    )


# =============================================================================
# CLOCK
# =============================================================================

class FakeClock:
    """Manually advanced time source (epoch seconds)."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    """Create a controllable clock."""
    return FakeClock()


# =============================================================================
# LEDGER AND CORE FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    """Create a seeded simulated ledger with a 10-value index space."""
    from flightsurety_oracles.ledger.simulated import SimulatedLedger
    return SimulatedLedger(num_accounts=40, index_space_size=10, min_responses=3, seed=7)


@pytest.fixture
def registry(ledger):
    """Create an empty oracle registry on the simulated ledger."""
    from flightsurety_oracles.core.registry import OracleRegistry
    return OracleRegistry(ledger, registration_timeout_seconds=1.0)


@pytest.fixture
def tracker(clock):
    """Create a request tracker with a 60 second timeout."""
    from flightsurety_oracles.core.tracker import RequestTracker
    return RequestTracker(
        request_timeout_seconds=60,
        retention_window_seconds=600,
        max_retained_records=100,
        clock=clock,
    )


@pytest.fixture
def pool_accounts(ledger):
    """The 20 accounts the original deployment used for oracles (20..39)."""
    return ledger._accounts[20:40]


# =============================================================================
# CONFIGURATION FIXTURES
# =============================================================================

@pytest.fixture
def test_config():
    """Create a test configuration."""
    from flightsurety_oracles.config import (
        OracleServiceConfig,
        OraclePoolConfig,
        TrackerConfig,
        Environment,
    )

    return OracleServiceConfig(
        environment=Environment.DEVELOPMENT,
        pool=OraclePoolConfig(
            pool_size=20,
            index_space_size=10,
            account_offset=20,
            registration_timeout_seconds=1.0,
            submission_timeout_seconds=1.0,
        ),
        tracker=TrackerConfig(
            request_timeout_seconds=60,
            retention_window_seconds=600,
            report_grace_seconds=5.0,
            sweep_interval_seconds=0.05,
        ),
    )


@pytest.fixture(autouse=True)
def reset_config_fixture():
    """Reset global configuration before each test."""
    from flightsurety_oracles.config import reset_config
    reset_config()
    yield
    reset_config()
