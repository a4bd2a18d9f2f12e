"""
FlightSurety Oracles - Oracle Pool & Response Coordination Service

This package simulates the off-chain oracle network that answers flight-status
requests for the FlightSurety insurance ledger. It registers a pool of oracle
accounts, watches the ledger for oracle requests, answers on behalf of every
oracle whose assigned indices match, and tracks each request until the ledger
resolves it or it times out.

Modules:
    - ledger: Ledger client adapter (JSON-RPC gateway + in-memory simulation)
    - core: Oracle registry, request tracker, event dispatcher, response submitter
    - service: Service lifecycle and read-only query interface
    - api: HTTP query endpoints
    - config: Configuration and logging setup
"""

__version__ = "1.0.0"
__license__ = "MIT"
