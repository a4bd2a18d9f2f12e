"""
FlightSurety API Package

Read-only HTTP endpoints over the oracle service.
"""

from .server import create_app, main

__all__ = ["create_app", "main"]
