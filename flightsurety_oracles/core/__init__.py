"""
FlightSurety Core Package

Oracle pool coordination: registry, request tracking, event dispatch and
response submission.
"""

from .registry import OracleRegistry
from .tracker import RequestTracker
from .submitter import (
    ResponseSubmitter,
    StatusPolicy,
    FixedStatusPolicy,
    RandomStatusPolicy,
)
from .dispatcher import EventDispatcher, decode_event

__all__ = [
    "OracleRegistry",
    "RequestTracker",
    "ResponseSubmitter",
    "StatusPolicy",
    "FixedStatusPolicy",
    "RandomStatusPolicy",
    "EventDispatcher",
    "decode_event",
]
