"""
FlightSurety Ledger Package

The oracle service's I/O boundary to the FlightSurety contract.
"""

from .client import LedgerClient, JsonRpcLedgerClient, Receipt
from .simulated import SimulatedLedger

__all__ = [
    "LedgerClient",
    "JsonRpcLedgerClient",
    "Receipt",
    "SimulatedLedger",
]
