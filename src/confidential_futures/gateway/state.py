"""Persistence of the gateway worker's tracking maps.

The worker keeps pending, processed and failed requests in memory and saves
them on shutdown so that a restarted worker picks up where it left off.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from confidential_futures.gateway.submitters import GatewayError
from confidential_futures.storage.models import RequestKind

logger = logging.getLogger(__name__)

DEFAULT_REDIS_STATE_KEY = "gateway:state"


class GatewayStateError(GatewayError):
    """Raised when tracking state cannot be loaded or saved."""


@dataclass
class TrackedRequest:
    """A request the worker has seen but not yet completed."""

    request_id: int
    kind: RequestKind
    created_at: float
    retries: int = 0
    contract_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "kind": self.kind.value,
            "created_at": self.created_at,
            "retries": self.retries,
            "contract_id": self.contract_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackedRequest:
        return cls(
            request_id=int(data["request_id"]),
            kind=RequestKind(data["kind"]),
            created_at=float(data["created_at"]),
            retries=int(data.get("retries", 0)),
            contract_id=data.get("contract_id"),
        )


@dataclass
class FailureRecord:
    request_id: int
    kind: RequestKind
    reason: str
    failed_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "kind": self.kind.value,
            "reason": self.reason,
            "failed_at": self.failed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureRecord:
        return cls(
            request_id=int(data["request_id"]),
            kind=RequestKind(data["kind"]),
            reason=str(data["reason"]),
            failed_at=float(data["failed_at"]),
        )


@dataclass
class GatewayState:
    """Snapshot of the worker's pending/processed/failed maps.

    `processed` maps each delivered request id to the time it was delivered.
    """

    pending: dict[int, TrackedRequest] = field(default_factory=dict)
    processed: dict[int, float] = field(default_factory=dict)
    failed: dict[int, FailureRecord] = field(default_factory=dict)
    saved_at: float | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "pending": [p.to_dict() for p in self.pending.values()],
                "processed": {str(rid): at for rid, at in sorted(self.processed.items())},
                "failed": [f.to_dict() for f in self.failed.values()],
                "saved_at": self.saved_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> GatewayState:
        try:
            data = json.loads(raw)
            pending = [TrackedRequest.from_dict(p) for p in data.get("pending", [])]
            failed = [FailureRecord.from_dict(f) for f in data.get("failed", [])]
            saved_at = data.get("saved_at")
            raw_processed = data.get("processed", {})
            if isinstance(raw_processed, list):
                # older snapshots kept bare ids; date them at the save time
                processed = {int(r): float(saved_at or 0.0) for r in raw_processed}
            else:
                processed = {int(r): float(at) for r, at in raw_processed.items()}
            return cls(
                pending={p.request_id: p for p in pending},
                processed=processed,
                failed={f.request_id: f for f in failed},
                saved_at=saved_at,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise GatewayStateError(f"Corrupt gateway state: {e}") from e


class GatewayStateStore(Protocol):
    async def load(self) -> GatewayState | None: ...

    async def save(self, state: GatewayState) -> None: ...


class RedisGatewayStateStore:
    """Keeps the state snapshot under one Redis key.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        store = RedisGatewayStateStore(redis)
        ```
    """

    def __init__(self, redis: Redis, *, key: str = DEFAULT_REDIS_STATE_KEY) -> None:
        self._redis = redis
        self._key = key

    async def load(self) -> GatewayState | None:
        try:
            raw = await self._redis.get(self._key)
        except RedisError as e:
            raise GatewayStateError(f"Failed to load gateway state: {e}") from e
        if raw is None:
            return None
        return GatewayState.from_json(raw)

    async def save(self, state: GatewayState) -> None:
        try:
            await self._redis.set(self._key, state.to_json())
        except RedisError as e:
            raise GatewayStateError(f"Failed to save gateway state: {e}") from e


class FileGatewayStateStore:
    """Keeps the state snapshot in a JSON file, replaced atomically."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> str | None:
        if not self._path.exists():
            return None
        return self._path.read_text(encoding="utf-8")

    def _write(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, self._path)

    async def load(self) -> GatewayState | None:
        try:
            raw = await asyncio.to_thread(self._read)
        except OSError as e:
            raise GatewayStateError(f"Failed to read {self._path}: {e}") from e
        if raw is None:
            return None
        return GatewayState.from_json(raw)

    async def save(self, state: GatewayState) -> None:
        try:
            await asyncio.to_thread(self._write, state.to_json())
        except OSError as e:
            raise GatewayStateError(f"Failed to write {self._path}: {e}") from e
        logger.debug("Gateway state saved to %s", self._path)
