"""
FlightSurety Oracles Error Taxonomy

None of these errors is fatal to the running service. The single exception
is SubscriptionError raised while the service is starting: without its event
subscriptions the pool has nothing to respond to, so startup is aborted.
"""

from __future__ import annotations

from typing import Any, Optional


class OracleServiceError(Exception):
    """Base class for all oracle service errors."""


class LedgerError(OracleServiceError):
    """A ledger call was rejected or could not be delivered."""

    def __init__(self, message: str, method: Optional[str] = None):
        super().__init__(message)
        self.method = method


class RegistrationError(OracleServiceError):
    """
    An oracle could not obtain its indices from the ledger.

    Retryable: re-invoke registration for this oracle only.
    """

    def __init__(self, address: str, reason: str):
        super().__init__(f"Registration failed for oracle {address}: {reason}")
        self.address = address
        self.reason = reason


class SubmissionError(OracleServiceError):
    """A single oracle's response transaction failed. Logged, never retried."""

    def __init__(self, oracle: str, key: Any, reason: str):
        super().__init__(f"Oracle {oracle} failed to respond to {key}: {reason}")
        self.oracle = oracle
        self.key = key
        self.reason = reason


class DecodeError(OracleServiceError):
    """A ledger event payload could not be decoded. The event is dropped."""

    def __init__(self, topic: str, reason: str):
        super().__init__(f"Cannot decode {topic} event: {reason}")
        self.topic = topic
        self.reason = reason


class TrackerStateError(OracleServiceError):
    """An event referenced an unknown or terminal request."""

    def __init__(self, key: Any, state: Optional[str] = None):
        detail = f"state={state}" if state else "unknown request"
        super().__init__(f"Request {key} is not open ({detail})")
        self.key = key
        self.state = state


class SubscriptionError(OracleServiceError):
    """The initial subscription to a ledger topic could not be established."""

    def __init__(self, topic: str, reason: str):
        super().__init__(f"Cannot subscribe to {topic}: {reason}")
        self.topic = topic
        self.reason = reason
