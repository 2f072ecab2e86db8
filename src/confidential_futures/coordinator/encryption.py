"""Ciphertext handles and the FHE engine boundary.

The coordinator never sees plaintext of stored values: it only holds opaque
handles and asks an `FheEngine` to combine them. The real engine (an FHEVM
coprocessor) is an external collaborator; `LocalFheEngine` is a transparent
development/test engine with uint64 wrap-around semantics.
"""

from __future__ import annotations

import secrets
import threading
from typing import Protocol, runtime_checkable

Ciphertext = str  # 0x-prefixed 32-byte handle

UINT64_MODULUS = 2**64


class FheEngineError(Exception):
    """Raised when a ciphertext handle cannot be used."""


class UnknownHandleError(FheEngineError):
    """Raised when a handle was not produced by this engine."""


@runtime_checkable
class FheEngine(Protocol):
    """Homomorphic operations over opaque uint64 ciphertexts."""

    def encrypt(self, value: int) -> Ciphertext: ...

    def zero(self) -> Ciphertext: ...

    def add(self, a: Ciphertext, b: Ciphertext) -> Ciphertext: ...

    def sub(self, a: Ciphertext, b: Ciphertext) -> Ciphertext: ...

    def mul(self, a: Ciphertext, b: Ciphertext) -> Ciphertext: ...

    def mul_plain(self, a: Ciphertext, b: int) -> Ciphertext: ...

    def add_plain(self, a: Ciphertext, b: int) -> Ciphertext: ...

    def div_plain(self, a: Ciphertext, b: int) -> Ciphertext: ...

    def min(self, a: Ciphertext, b: Ciphertext) -> Ciphertext: ...

    def ge(self, a: Ciphertext, b: Ciphertext) -> Ciphertext: ...

    def select(self, condition: Ciphertext, if_true: Ciphertext, if_false: Ciphertext) -> Ciphertext: ...


class LocalFheEngine:
    """Non-secure in-process engine for development and tests.

    Values live in a private table keyed by random handles; `reveal` is the
    decryption capability the local resolver uses. Arithmetic wraps modulo
    2**64 like FHEVM's euint64.
    """

    def __init__(self) -> None:
        self._values: dict[Ciphertext, int] = {}
        self._lock = threading.Lock()

    def _store(self, value: int) -> Ciphertext:
        handle = "0x" + secrets.token_hex(32)
        with self._lock:
            self._values[handle] = value % UINT64_MODULUS
        return handle

    def _load(self, handle: Ciphertext) -> int:
        with self._lock:
            try:
                return self._values[handle]
            except KeyError:
                raise UnknownHandleError(f"Unknown ciphertext handle {handle[:10]}...") from None

    def reveal(self, handle: Ciphertext) -> int:
        return self._load(handle)

    def encrypt(self, value: int) -> Ciphertext:
        if value < 0:
            raise FheEngineError("only unsigned values can be encrypted")
        return self._store(value)

    def zero(self) -> Ciphertext:
        return self._store(0)

    def add(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        return self._store(self._load(a) + self._load(b))

    def sub(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        return self._store(self._load(a) - self._load(b))

    def mul(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        return self._store(self._load(a) * self._load(b))

    def mul_plain(self, a: Ciphertext, b: int) -> Ciphertext:
        return self._store(self._load(a) * b)

    def add_plain(self, a: Ciphertext, b: int) -> Ciphertext:
        return self._store(self._load(a) + b)

    def div_plain(self, a: Ciphertext, b: int) -> Ciphertext:
        if b <= 0:
            raise FheEngineError("divisor must be a positive plaintext")
        return self._store(self._load(a) // b)

    def min(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        return self._store(min(self._load(a), self._load(b)))

    def ge(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        return self._store(1 if self._load(a) >= self._load(b) else 0)

    def select(self, condition: Ciphertext, if_true: Ciphertext, if_false: Ciphertext) -> Ciphertext:
        return self._store(self._load(if_true) if self._load(condition) else self._load(if_false))

    def export_state(self) -> dict[str, int]:
        """Copy of the handle table, for persisting a local run."""
        with self._lock:
            return dict(self._values)

    @classmethod
    def from_state(cls, values: dict[str, int]) -> LocalFheEngine:
        engine = cls()
        engine._values = {handle: int(value) % UINT64_MODULUS for handle, value in values.items()}
        return engine
