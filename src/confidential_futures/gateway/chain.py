"""EVM chain client for the gateway operator.

This module provides the RPC access the gateway worker needs when the
coordinator lives on chain:
- Log polling for coordinator events
- Signed callback transactions from the gateway key
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to secondary RPC URL
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120
DEFAULT_MIN_OPERATOR_BALANCE_ETH = Decimal("0.1")


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when RPC call fails."""


class TransactionError(ChainClientError):
    """Raised when a transaction reverts or is never mined."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass
class HealthReport:
    """Result of a gateway operator health check."""

    healthy: bool
    block_number: int | None = None
    gas_price_gwei: Decimal | None = None
    balance_eth: Decimal | None = None
    low_balance: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "block_number": self.block_number,
            "gas_price_gwei": str(self.gas_price_gwei) if self.gas_price_gwei is not None else None,
            "balance_eth": str(self.balance_eth) if self.balance_eth is not None else None,
            "low_balance": self.low_balance,
            "error": self.error,
        }


class ChainClient:
    """Async web3 client with rate limiting, retries and failover.

    Example:
        ```python
        client = ChainClient(
            rpc_url="http://localhost:8545",
            fallback_rpc_url="https://rpc.sepolia.org",
        )
        block = await client.get_block_number()
        report = await client.health_check("0x...")
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        receipt_timeout_seconds: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts on failure.
            retry_delay_seconds: Initial delay between retries.
            receipt_timeout_seconds: How long to wait for a transaction receipt.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._receipt_timeout = receipt_timeout_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0  # Try primary again after 60s

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    def _active_web3(self) -> AsyncWeb3[AsyncHTTPProvider]:
        if self._primary_healthy or self._w3_fallback is None:
            return self._w3
        return self._w3_fallback

    def _should_try_primary(self) -> bool:
        """Check if we should try the primary RPC."""
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_provider(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Call one provider with exponential backoff.

        Raises:
            RPCError: If every attempt on this provider failed.
        """
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                return await getattr(w3.eth, func_name)(*args, **kwargs)
            except Web3Exception as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(delay)
                    delay *= 2
        raise RPCError(f"{label} RPC {func_name} failed: {last_error}") from last_error

    async def _execute_with_retry(
        self,
        func_name: str,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Execute an RPC call on the primary, then the fallback.

        An exhausted primary is marked unhealthy and skipped until the
        recovery interval has passed.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: RPCError | None = None
        if self._should_try_primary():
            try:
                result = await self._call_provider(self._w3, "Primary", func_name, *args, **kwargs)
            except RPCError as e:
                last_error = e
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()
            else:
                self._primary_healthy = True
                return result

        if self._w3_fallback is not None:
            try:
                result = await self._call_provider(self._w3_fallback, "Fallback", func_name, *args, **kwargs)
            except RPCError as e:
                last_error = e
            else:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error or 'primary unavailable'}")

    async def get_block_number(self) -> int:
        return int(await self._execute_with_retry("get_block_number"))

    async def get_chain_id(self) -> int:
        return int(await self._execute_with_retry("get_chain_id"))

    async def get_gas_price(self) -> int:
        """Current gas price in wei."""
        return int(await self._execute_with_retry("get_gas_price"))

    async def get_balance(self, address: str) -> Decimal:
        """Latest balance in wei."""
        balance = await self._execute_with_retry("get_balance", AsyncWeb3.to_checksum_address(address))
        return Decimal(balance)

    async def get_transaction_count(self, address: str, block_identifier: str = "pending") -> int:
        count = await self._execute_with_retry(
            "get_transaction_count",
            AsyncWeb3.to_checksum_address(address),
            block_identifier,
        )
        return int(count)

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via `eth_getLogs` with retry/failover semantics."""
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """Broadcast a signed transaction; returns its 0x-prefixed hash.

        Rebroadcasting the same signed payload is harmless, so this goes
        through the same retry/failover path as reads.
        """
        tx_hash = await self._execute_with_retry("send_raw_transaction", raw_transaction)
        return AsyncWeb3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        """Wait for a transaction to be mined.

        Raises:
            TransactionError: If it is not mined in time or it reverted.
        """
        try:
            receipt = await self._active_web3().eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout
            )
        except TimeExhausted as e:
            raise TransactionError(f"Transaction {tx_hash} not mined: {e}") from e
        except Web3Exception as e:
            raise RPCError(f"Failed to fetch receipt for {tx_hash}: {e}") from e

        receipt_dict = dict(receipt)
        if int(receipt_dict.get("status", 0)) != 1:
            raise TransactionError(f"Transaction {tx_hash} reverted")
        return receipt_dict

    def contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        """Contract binding on the currently active provider."""
        return self._active_web3().eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    def account_from_key(self, private_key: str) -> Any:
        """Local signing account for a hex private key."""
        return self._w3.eth.account.from_key(private_key)

    async def health_check(
        self,
        operator_address: str | None = None,
        *,
        min_balance_eth: Decimal = DEFAULT_MIN_OPERATOR_BALANCE_ETH,
    ) -> HealthReport:
        """Check connectivity, gas price and the operator's balance.

        Args:
            operator_address: Address whose balance funds callbacks.
            min_balance_eth: Balance below which a warning is raised.

        Returns:
            HealthReport; `healthy` is False only when the RPC is unreachable.
        """
        try:
            block_number = await self.get_block_number()
            gas_price = await self.get_gas_price()
        except RPCError as e:
            logger.error("Chain health check failed: %s", e)
            return HealthReport(healthy=False, error=str(e))

        report = HealthReport(
            healthy=True,
            block_number=block_number,
            gas_price_gwei=Decimal(AsyncWeb3.from_wei(gas_price, "gwei")),
        )
        if operator_address:
            try:
                balance_wei = await self.get_balance(operator_address)
            except RPCError as e:
                logger.error("Operator balance lookup failed: %s", e)
                report.error = str(e)
                return report
            report.balance_eth = Decimal(AsyncWeb3.from_wei(int(balance_wei), "ether"))
            if report.balance_eth < min_balance_eth:
                report.low_balance = True
                logger.warning(
                    "Low gateway balance: %s ETH (minimum %s ETH)",
                    report.balance_eth,
                    min_balance_eth,
                )

        logger.info(
            "Chain health: block=%d gas=%s gwei balance=%s ETH",
            block_number,
            report.gas_price_gwei,
            report.balance_eth,
        )
        return report

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
