"""Resolver client boundary: "decrypt this value and tell me the result".

The coordinator only issues `request_decryption` and receives a request id;
the gateway worker later calls `decrypt` to obtain the plaintext and delivers
it back through the coordinator's callback entry point.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from confidential_futures.coordinator.encryption import Ciphertext, LocalFheEngine

logger = logging.getLogger(__name__)


class ResolverError(Exception):
    """Raised when a decryption attempt fails."""


class ResolverUnavailableError(ResolverError):
    """Raised when the resolver does not answer for a request."""


class UnknownRequestError(ResolverError):
    """Raised for request ids the resolver never issued."""


@runtime_checkable
class ResolverClient(Protocol):
    async def request_decryption(self, ciphertexts: Sequence[Ciphertext]) -> int:
        """Register a decryption request; returns its request id."""
        ...

    async def decrypt(self, request_id: int) -> int:
        """Return the plaintext of the request's first ciphertext."""
        ...


Outcome = int | BaseException


class LocalResolver:
    """Deterministic resolver backed by a `LocalFheEngine`.

    Behaviour can be programmed per request id for tests and simulations:
    queued outcomes are consumed one per `decrypt` call (an int is returned
    as the plaintext, an exception is raised), and withheld requests never
    resolve.

    Example:
        ```python
        engine = LocalFheEngine()
        resolver = LocalResolver(engine)
        resolver.program(1, ResolverError("oracle down"), 0)  # fail, then zero
        resolver.withhold(2)
        ```
    """

    def __init__(
        self,
        engine: LocalFheEngine,
        *,
        latency_seconds: float = 0.0,
        first_request_id: int = 1,
    ) -> None:
        self._engine = engine
        self._latency = latency_seconds
        self._ids = itertools.count(first_request_id)
        self._requests: dict[int, tuple[Ciphertext, ...]] = {}
        self._scripted: dict[int, deque[Outcome]] = {}
        self._withheld: set[int] = set()
        self.decrypt_calls: dict[int, int] = {}

    @property
    def requests(self) -> dict[int, tuple[Ciphertext, ...]]:
        return dict(self._requests)

    def program(self, request_id: int, *outcomes: Outcome) -> None:
        self._scripted.setdefault(request_id, deque()).extend(outcomes)

    def withhold(self, request_id: int) -> None:
        self._withheld.add(request_id)

    def release(self, request_id: int) -> None:
        self._withheld.discard(request_id)

    async def request_decryption(self, ciphertexts: Sequence[Ciphertext]) -> int:
        if not ciphertexts:
            raise ResolverError("at least one ciphertext is required")
        request_id = next(self._ids)
        self._requests[request_id] = tuple(ciphertexts)
        logger.debug("Decryption request %d registered (%d ciphertexts)", request_id, len(ciphertexts))
        return request_id

    async def decrypt(self, request_id: int) -> int:
        self.decrypt_calls[request_id] = self.decrypt_calls.get(request_id, 0) + 1
        if self._latency:
            await asyncio.sleep(self._latency)
        if request_id not in self._requests:
            raise UnknownRequestError(f"Unknown decryption request {request_id}")
        if request_id in self._withheld:
            raise ResolverUnavailableError(f"Decryption request {request_id} withheld")

        queued = self._scripted.get(request_id)
        if queued:
            outcome = queued.popleft()
            if isinstance(outcome, BaseException):
                raise outcome
            return int(outcome)

        return self._engine.reveal(self._requests[request_id][0])
