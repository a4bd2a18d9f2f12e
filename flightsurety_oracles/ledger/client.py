"""
FlightSurety Ledger Client Adapter

The oracle service's only I/O boundary. Everything the core needs from the
FlightSurety app contract goes through the LedgerClient interface:

    - submit_transaction: state-changing contract call from an account
    - call_read_only: view call, optionally on behalf of an account
    - subscribe: lazy, infinite stream of event logs for one topic

The client is abstracted to allow:
    - An in-memory simulated ledger for tests and local runs
    - A JSON-RPC gateway client for a live node
"""

from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
import logging

import httpx
from pydantic import ValidationError

from ..exceptions import LedgerError
from ..models import LedgerEvent


logger = logging.getLogger(__name__)


@dataclass
class Receipt:
    """Result of a mined transaction."""
    tx_hash: str
    block_number: int
    status: bool = True
    events: List[LedgerEvent] = field(default_factory=list)


class LedgerClient(ABC):
    """
    Abstract base class for ledger clients.

    All methods raise LedgerError when the ledger rejects the call or cannot
    be reached.
    """

    @abstractmethod
    async def submit_transaction(
        self,
        method: str,
        args: Sequence[Any],
        from_address: str,
        value: int = 0,
        gas: Optional[int] = None,
    ) -> Receipt:
        """
        Send a state-changing contract call.

        Args:
            method: Contract method name
            args: Positional method arguments
            from_address: Sending account
            value: Wei attached to the call
            gas: Gas limit (client default if None)

        Returns:
            Receipt of the mined transaction
        """
        pass

    @abstractmethod
    async def call_read_only(
        self,
        method: str,
        args: Sequence[Any] = (),
        from_address: Optional[str] = None,
    ) -> Any:
        """Run a view call and return its decoded result."""
        pass

    @abstractmethod
    async def subscribe(self, topic: str, from_block: int = 0) -> AsyncIterator[LedgerEvent]:
        """
        Open a subscription to one event topic.

        The returned iterator replays history from `from_block` and then
        follows new blocks forever. It cannot be restarted; open a new
        subscription with a later `from_block` instead.

        Raises:
            LedgerError: If the subscription cannot be established
        """
        pass

    @abstractmethod
    async def get_accounts(self) -> List[str]:
        """List the accounts the ledger node can sign for."""
        pass

    async def close(self) -> None:
        """Release connections and end open subscriptions."""
        return None


class JsonRpcLedgerClient(LedgerClient):
    """
    Ledger client for a JSON-RPC gateway in front of the FlightSurety contract.

    Subscriptions are served by polling `ledger_getLogs` and yielding new
    logs in (block, log index) order.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str = "",
        timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 1.0,
        default_gas: int = 4_500_000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the gateway client.

        Args:
            rpc_url: JSON-RPC endpoint
            contract_address: FlightSurety app contract address
            timeout_seconds: HTTP request timeout
            poll_interval_seconds: Delay between log polls when idle
            default_gas: Gas limit used when a call does not pass one
            transport: Optional httpx transport (for testing)
        """
        self._rpc_url = rpc_url
        self._contract = contract_address
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._default_gas = default_gas
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)
        self._closed = False

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        self._closed = True
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        """Perform one JSON-RPC call and return its `result` member."""
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            client = await self._get_client()
            response = await client.post(self._rpc_url, json=request)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise LedgerError(f"{method} transport failure: {e}", method) from e
        except ValueError as e:
            raise LedgerError(f"{method} returned invalid JSON: {e}", method) from e

        if not isinstance(body, dict):
            raise LedgerError(f"{method} returned a non-object response", method)
        if body.get("error"):
            error = body["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise LedgerError(f"{method} rejected: {message}", method)

        return body.get("result")

    @staticmethod
    def _parse_log(raw: Dict[str, Any]) -> LedgerEvent:
        return LedgerEvent(
            topic=raw.get("topic") or raw.get("event", ""),
            block_number=int(raw.get("blockNumber", 0)),
            log_index=int(raw.get("logIndex", 0)),
            payload=raw.get("returnValues") or raw.get("payload") or {},
            tx_hash=raw.get("transactionHash"),
        )

    async def submit_transaction(
        self,
        method: str,
        args: Sequence[Any],
        from_address: str,
        value: int = 0,
        gas: Optional[int] = None,
    ) -> Receipt:
        result = await self._rpc(
            "ledger_sendTransaction",
            [{
                "to": self._contract,
                "from": from_address,
                "method": method,
                "args": list(args),
                "value": str(value),
                "gas": gas or self._default_gas,
            }],
        )
        if not isinstance(result, dict):
            raise LedgerError(f"{method} returned no receipt", method)

        try:
            events = [self._parse_log(log) for log in result.get("logs", [])]
        except (ValidationError, TypeError, ValueError) as e:
            raise LedgerError(f"{method} receipt has malformed logs: {e}", method) from e

        receipt = Receipt(
            tx_hash=result.get("transactionHash", ""),
            block_number=int(result.get("blockNumber", 0)),
            status=bool(result.get("status", True)),
            events=events,
        )
        if not receipt.status:
            raise LedgerError(f"{method} reverted in tx {receipt.tx_hash}", method)
        return receipt

    async def call_read_only(
        self,
        method: str,
        args: Sequence[Any] = (),
        from_address: Optional[str] = None,
    ) -> Any:
        call: Dict[str, Any] = {"to": self._contract, "method": method, "args": list(args)}
        if from_address:
            call["from"] = from_address
        return await self._rpc("ledger_call", [call])

    async def get_accounts(self) -> List[str]:
        accounts = await self._rpc("ledger_getAccounts", [])
        return list(accounts or [])

    async def subscribe(self, topic: str, from_block: int = 0) -> AsyncIterator[LedgerEvent]:
        # Fail fast if the gateway is unreachable
        await self._rpc("ledger_blockNumber", [])
        return self._poll_logs(topic, from_block)

    async def _poll_logs(self, topic: str, from_block: int) -> AsyncIterator[LedgerEvent]:
        next_block = from_block
        seen_in_block: set = set()

        while not self._closed:
            try:
                logs = await self._rpc(
                    "ledger_getLogs",
                    [{"address": self._contract, "topic": topic, "fromBlock": next_block}],
                )
            except LedgerError as e:
                logger.warning(f"Polling {topic} logs failed, will retry: {e}")
                await asyncio.sleep(self._poll_interval)
                continue

            events = []
            for raw in logs or []:
                try:
                    events.append(self._parse_log(raw))
                except (ValidationError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unparseable {topic} log: {e}")
            events.sort(key=lambda ev: ev.sequence)

            fresh = 0
            for event in events:
                if event.block_number < next_block or event.sequence in seen_in_block:
                    continue
                fresh += 1
                if event.block_number > next_block:
                    next_block = event.block_number
                    seen_in_block = set()
                seen_in_block.add(event.sequence)
                yield event

            if not fresh:
                await asyncio.sleep(self._poll_interval)
