"""Tests for the local FHE engine and resolver."""

from __future__ import annotations

import pytest

from confidential_futures.coordinator.encryption import (
    FheEngineError,
    LocalFheEngine,
    UnknownHandleError,
)
from confidential_futures.coordinator.resolver import (
    LocalResolver,
    ResolverClient,
    ResolverError,
    ResolverUnavailableError,
    UnknownRequestError,
)


class TestLocalFheEngine:
    def test_handles_are_opaque(self) -> None:
        engine = LocalFheEngine()
        a = engine.encrypt(5)
        b = engine.encrypt(5)
        assert a != b
        assert a.startswith("0x") and len(a) == 66

    def test_arithmetic(self) -> None:
        engine = LocalFheEngine()
        a, b = engine.encrypt(7), engine.encrypt(3)
        assert engine.reveal(engine.add(a, b)) == 10
        assert engine.reveal(engine.sub(a, b)) == 4
        assert engine.reveal(engine.mul(a, b)) == 21
        assert engine.reveal(engine.div_plain(a, 2)) == 3
        assert engine.reveal(engine.min(a, b)) == 3
        assert engine.reveal(engine.ge(a, b)) == 1
        assert engine.reveal(engine.select(engine.ge(b, a), a, b)) == 3

    def test_subtraction_wraps_like_uint64(self) -> None:
        engine = LocalFheEngine()
        result = engine.sub(engine.encrypt(1), engine.encrypt(2))
        assert engine.reveal(result) == 2**64 - 1

    def test_rejects_negative_and_bad_divisor(self) -> None:
        engine = LocalFheEngine()
        with pytest.raises(FheEngineError):
            engine.encrypt(-1)
        with pytest.raises(FheEngineError):
            engine.div_plain(engine.encrypt(1), 0)

    def test_unknown_handle(self) -> None:
        engine = LocalFheEngine()
        with pytest.raises(UnknownHandleError):
            engine.reveal("0x" + "00" * 32)

    def test_state_round_trip(self) -> None:
        engine = LocalFheEngine()
        handle = engine.encrypt(99)
        restored = LocalFheEngine.from_state(engine.export_state())
        assert restored.reveal(handle) == 99


class TestLocalResolver:
    def test_satisfies_protocol(self, resolver: LocalResolver) -> None:
        assert isinstance(resolver, ResolverClient)

    @pytest.mark.asyncio
    async def test_decrypts_first_ciphertext(self, engine: LocalFheEngine, resolver: LocalResolver) -> None:
        request_id = await resolver.request_decryption([engine.encrypt(51_000), engine.encrypt(1)])
        assert await resolver.decrypt(request_id) == 51_000
        assert resolver.decrypt_calls[request_id] == 1

    @pytest.mark.asyncio
    async def test_request_ids_are_sequential(self, engine: LocalFheEngine, resolver: LocalResolver) -> None:
        first = await resolver.request_decryption([engine.encrypt(1)])
        second = await resolver.request_decryption([engine.encrypt(2)])
        assert second == first + 1

    @pytest.mark.asyncio
    async def test_programmed_outcomes_are_consumed_in_order(
        self, engine: LocalFheEngine, resolver: LocalResolver
    ) -> None:
        request_id = await resolver.request_decryption([engine.encrypt(10)])
        resolver.program(request_id, ResolverError("oracle down"), 0)

        with pytest.raises(ResolverError):
            await resolver.decrypt(request_id)
        assert await resolver.decrypt(request_id) == 0
        assert await resolver.decrypt(request_id) == 10

    @pytest.mark.asyncio
    async def test_withheld_request(self, engine: LocalFheEngine, resolver: LocalResolver) -> None:
        request_id = await resolver.request_decryption([engine.encrypt(10)])
        resolver.withhold(request_id)
        with pytest.raises(ResolverUnavailableError):
            await resolver.decrypt(request_id)
        resolver.release(request_id)
        assert await resolver.decrypt(request_id) == 10

    @pytest.mark.asyncio
    async def test_unknown_and_empty_requests(self, resolver: LocalResolver) -> None:
        with pytest.raises(UnknownRequestError):
            await resolver.decrypt(404)
        with pytest.raises(ResolverError):
            await resolver.request_decryption([])
