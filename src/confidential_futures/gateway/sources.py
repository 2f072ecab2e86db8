"""Event sources feeding the gateway worker.

`BusEventSource` attaches to an in-process coordinator's event bus;
`ChainEventSource` polls coordinator logs from an EVM chain and decodes them
into the same event types.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

from web3 import AsyncWeb3

from confidential_futures.coordinator.models import (
    DecryptionFailed,
    DecryptionRequested,
    GatewayCallbackProcessed,
    LedgerEvent,
    WithdrawalRequested,
)
from confidential_futures.gateway.abi import TOPICS
from confidential_futures.gateway.chain import RPCError

if TYPE_CHECKING:
    from confidential_futures.coordinator.events import EventBus, EventHandler
    from confidential_futures.gateway.chain import ChainClient

logger = logging.getLogger(__name__)

GATEWAY_EVENT_TYPES: tuple[type[LedgerEvent], ...] = (
    DecryptionRequested,
    WithdrawalRequested,
    DecryptionFailed,
    GatewayCallbackProcessed,
)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_BLOCK_RANGE = 2000


class GatewayEventSource(Protocol):
    async def start(self, handler: EventHandler) -> None: ...

    async def stop(self) -> None: ...


class BusEventSource:
    """Delivers events from an in-process `EventBus`."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._handler: EventHandler | None = None

    async def start(self, handler: EventHandler) -> None:
        self._handler = handler
        for event_type in GATEWAY_EVENT_TYPES:
            self._bus.subscribe(event_type, handler)

    async def stop(self) -> None:
        if self._handler is not None:
            self._bus.unsubscribe(self._handler)
            self._handler = None


def _hex(value: Any) -> str:
    # topics and data may be HexBytes, bytes or str
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


def _word(data: str, index: int) -> int:
    body = data[2:]
    return int(body[index * 64 : (index + 1) * 64] or "0", 16)


def _topic_to_address(topic: Any) -> str:
    return ("0x" + _hex(topic)[-40:]).lower()


def _decode_string(data: str) -> str:
    raw = bytes.fromhex(data[2:])
    if len(raw) < 64:
        return ""
    offset = int.from_bytes(raw[0:32], "big")
    length = int.from_bytes(raw[offset : offset + 32], "big")
    return raw[offset + 32 : offset + 32 + length].decode("utf-8", errors="replace")


def decode_log(log: dict[str, Any]) -> LedgerEvent | None:
    """Decode one coordinator log into a gateway event.

    Returns:
        The event, or None for logs the gateway does not consume.
    """
    topics = [_hex(t).lower() for t in log.get("topics", [])]
    if len(topics) < 2:
        return None
    data = _hex(log.get("data", "0x"))
    request_id = int(topics[1], 16)

    if topics[0] == TOPICS["DecryptionRequested"]:
        return DecryptionRequested(
            request_id=request_id,
            contract_id=int(topics[2], 16),
            timestamp=_word(data, 0),
        )
    if topics[0] == TOPICS["WithdrawalRequested"]:
        return WithdrawalRequested(
            request_id=request_id,
            trader=_topic_to_address(topics[2]),
            timestamp=_word(data, 0),
        )
    if topics[0] == TOPICS["DecryptionFailed"]:
        return DecryptionFailed(request_id=request_id, reason=_decode_string(data))
    if topics[0] == TOPICS["GatewayCallbackProcessed"]:
        return GatewayCallbackProcessed(request_id=request_id, success=_word(data, 0) != 0)
    return None


class ChainEventSource:
    """Polls `eth_getLogs` for coordinator events.

    Logs are delivered in (block, log index) order. The cursor only moves
    forward after a batch has been handed to the handler; an RPC failure
    retries the same range on the next poll.
    """

    def __init__(
        self,
        client: ChainClient,
        coordinator_address: str,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        start_block: int | None = None,
        max_block_range: int = DEFAULT_MAX_BLOCK_RANGE,
    ) -> None:
        self._client = client
        self._address = AsyncWeb3.to_checksum_address(coordinator_address)
        self._poll_interval = poll_interval_seconds
        self._next_block = start_block
        self._max_block_range = max_block_range
        self._handler: EventHandler | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def next_block(self) -> int | None:
        return self._next_block

    async def start(self, handler: EventHandler) -> None:
        self._handler = handler
        if self._next_block is None:
            self._next_block = await self._client.get_block_number()
        self._task = asyncio.create_task(self._poll_loop(), name="chain-event-source")
        logger.info("Polling coordinator logs from block %d", self._next_block)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def poll_once(self) -> int:
        """Fetch and deliver the next block range; returns the number of events."""
        if self._handler is None or self._next_block is None:
            raise RuntimeError("ChainEventSource.start() must be called first")

        latest = await self._client.get_block_number()
        if latest < self._next_block:
            return 0
        to_block = min(latest, self._next_block + self._max_block_range - 1)
        logs = await self._client.get_logs(
            {
                "address": self._address,
                "topics": [list(TOPICS.values())],
                "fromBlock": self._next_block,
                "toBlock": to_block,
            }
        )
        logs.sort(key=lambda log: (int(log.get("blockNumber", 0)), int(log.get("logIndex", 0))))

        delivered = 0
        for log in logs:
            event = decode_log(log)
            if event is None:
                continue
            await self._handler(event)
            delivered += 1

        self._next_block = to_block + 1
        return delivered

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except RPCError as e:
                logger.warning("Log poll failed: %s", e)
            await asyncio.sleep(self._poll_interval)
