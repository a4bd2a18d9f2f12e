"""
FlightSurety Oracles Core Data Models

This module defines the data structures shared by the oracle pool, the
request tracker and the ledger adapter.

Design Philosophy:
    - Identities and keys are frozen pydantic models (hashable, validated)
    - Ledger payloads are validated at the boundary; anything malformed
      becomes a DecodeError before it reaches the tracker
    - Mutable lifecycle state (RequestRecord) is a plain dataclass owned
      exclusively by the RequestTracker
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# ENUMS - Clear State Definitions
# =============================================================================

class StatusCode(int, Enum):
    """
    Flight status codes understood by the FlightSurety ledger.

    Only LATE_AIRLINE results in insurees being credited; the ledger
    owns that rule.
    """
    UNKNOWN = 0
    ON_TIME = 10
    LATE_AIRLINE = 20
    LATE_WEATHER = 30
    LATE_TECHNICAL = 40
    LATE_OTHER = 50


class RequestState(str, Enum):
    """
    Lifecycle of a tracked oracle request.

    OPEN: Waiting for oracle reports
    RESOLVED: The ledger accepted a quorum (terminal)
    EXPIRED: No resolution within the request timeout (terminal)
    """
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestState.OPEN


class LedgerTopic(str, Enum):
    """Event topics emitted by the FlightSurety app contract."""
    ORACLE_REQUEST = "OracleRequest"
    ORACLE_REPORT = "OracleReport"
    FLIGHT_STATUS_INFO = "FlightStatusInfo"
    REGISTER_AIRLINE = "RegisterAirline"
    AIRLINES_FUNDED = "AirlinesFunded"
    INSURANCE_PURCHASED = "InsurancePurchased"
    CREDIT_INSUREES = "CreditInsurees"
    WITHDRAW_COMPLETED = "WithdrawCompleted"


# Topics that are only logged, never routed to the tracker
INFORMATIONAL_TOPICS = (
    LedgerTopic.REGISTER_AIRLINE,
    LedgerTopic.AIRLINES_FUNDED,
    LedgerTopic.INSURANCE_PURCHASED,
    LedgerTopic.CREDIT_INSUREES,
    LedgerTopic.WITHDRAW_COMPLETED,
)

ORACLE_INDEX_COUNT = 3


# =============================================================================
# IDENTITIES AND KEYS
# =============================================================================

class OracleIdentity(BaseModel):
    """
    A registered oracle and the indices the ledger assigned to it.

    Attributes:
        address: Ledger account the oracle submits from
        indices: Exactly 3 distinct indices (uint8 on the ledger)
    """
    model_config = ConfigDict(frozen=True)

    address: str = Field(..., min_length=1)
    indices: FrozenSet[int]

    @field_validator("indices")
    @classmethod
    def _three_small_indices(cls, value: FrozenSet[int]) -> FrozenSet[int]:
        if len(value) != ORACLE_INDEX_COUNT:
            raise ValueError(
                f"expected {ORACLE_INDEX_COUNT} distinct indices, got {sorted(value)}"
            )
        if any(i < 0 or i > 255 for i in value):
            raise ValueError(f"indices out of uint8 range: {sorted(value)}")
        return value


@functools.total_ordering
class RequestKey(BaseModel):
    """
    Identifies one flight-status inquiry on the ledger.

    Opaque to the tracker: only hashed and compared.
    """
    model_config = ConfigDict(frozen=True)

    airline: str
    flight: str
    timestamp: int

    def as_tuple(self) -> Tuple[str, str, int]:
        return (self.airline, self.flight, self.timestamp)

    def __lt__(self, other: "RequestKey") -> bool:
        if not isinstance(other, RequestKey):
            return NotImplemented
        return self.as_tuple() < other.as_tuple()

    def __str__(self) -> str:
        return f"{self.airline}/{self.flight}/{self.timestamp}"


class Flight(BaseModel):
    """Static flight reference data served to the dapp."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str


KNOWN_FLIGHTS: List[Flight] = [
    Flight(id=0, name="AS2345"),
    Flight(id=1, name="SW7897"),
    Flight(id=2, name="AA8792"),
    Flight(id=3, name="UA01"),
    Flight(id=4, name="DELTA34"),
    Flight(id=5, name="SPI8797"),
    Flight(id=6, name="FRON235"),
    Flight(id=7, name="MI5657"),
]


# =============================================================================
# LEDGER EVENTS
# =============================================================================

class LedgerEvent(BaseModel):
    """
    A raw event log as delivered by a ledger subscription.

    (block_number, log_index) is strictly increasing in emission order
    and is used as the event's sequence number.
    """
    topic: str
    block_number: int = Field(..., ge=0)
    log_index: int = Field(default=0, ge=0)
    payload: Dict[str, Any] = Field(default_factory=dict)
    tx_hash: Optional[str] = None

    @property
    def sequence(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


class _KeyedPayload(BaseModel):
    """Fields shared by every oracle-related event payload."""
    model_config = ConfigDict(extra="ignore")

    airline: str = Field(..., min_length=1)
    flight: str = Field(..., min_length=1)
    timestamp: int = Field(..., ge=0)

    @property
    def key(self) -> RequestKey:
        return RequestKey(airline=self.airline, flight=self.flight, timestamp=self.timestamp)


class OracleRequestPayload(_KeyedPayload):
    index: int = Field(..., ge=0, le=255)


class StatusPayload(_KeyedPayload):
    status: StatusCode = Field(..., validation_alias=AliasChoices("status", "statusCode"))
    oracle: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        # Ledger gateways commonly deliver uint8 values as decimal strings
        if isinstance(value, str) and value.strip().isdigit():
            return int(value)
        return value


@dataclass(frozen=True)
class OracleRequestEvent:
    """The ledger asked oracles holding `index` for the status of `key`."""
    key: RequestKey
    index: int
    sequence: Tuple[int, int]


@dataclass(frozen=True)
class OracleReportEvent:
    """The ledger accepted one oracle response for `key`."""
    key: RequestKey
    status: StatusCode
    sequence: Tuple[int, int]
    oracle: Optional[str] = None


@dataclass(frozen=True)
class FlightStatusInfoEvent:
    """The ledger reached quorum for `key` and finalised `status`."""
    key: RequestKey
    status: StatusCode
    sequence: Tuple[int, int]


@dataclass(frozen=True)
class InformationalEvent:
    """Airline, insurance and payout bookkeeping events. Logged only."""
    topic: str
    payload: Dict[str, Any]
    sequence: Tuple[int, int]


# =============================================================================
# TRACKER AND SUBMISSION RECORDS
# =============================================================================

@dataclass
class RequestRecord:
    """
    Lifecycle of one oracle request.

    Owned by the RequestTracker; callers only ever see snapshots.
    """
    key: RequestKey
    selected_index: int
    created_at: float
    responses: Dict[str, StatusCode] = field(default_factory=dict)
    state: RequestState = RequestState.OPEN
    resolved_status: Optional[StatusCode] = None
    closed_at: Optional[float] = None
    late_reports: int = 0
    # (block, log index) of the resolution event, when known
    resolved_by: Optional[Tuple[int, int]] = None

    @property
    def is_open(self) -> bool:
        return self.state == RequestState.OPEN

    def age(self, now: float) -> float:
        return now - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "airline": self.key.airline,
            "flight": self.key.flight,
            "timestamp": self.key.timestamp,
            "selected_index": self.selected_index,
            "state": self.state.value,
            "responses": {oracle: int(code) for oracle, code in self.responses.items()},
            "resolved_status": int(self.resolved_status) if self.resolved_status is not None else None,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
            "late_reports": self.late_reports,
        }


@dataclass
class SubmissionResult:
    """Outcome of one oracle's response transaction."""
    oracle: str
    key: RequestKey
    status: StatusCode
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RegistrationReport:
    """Outcome of registering the oracle pool."""
    registered: List[OracleIdentity] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.registered) + len(self.failures)
