"""Command line entry point: `python -m confidential_futures <command>`."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import secrets
import signal
import sys
import time
from collections import Counter
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from redis.asyncio import Redis

from confidential_futures.config import Settings, get_settings
from confidential_futures.coordinator.encryption import LocalFheEngine
from confidential_futures.coordinator.events import EventBus, EventRecorder
from confidential_futures.coordinator.models import ProtocolConfig
from confidential_futures.coordinator.resolver import LocalResolver
from confidential_futures.coordinator.settlement import SettlementCoordinator
from confidential_futures.gateway.chain import ChainClient
from confidential_futures.gateway.sources import BusEventSource, ChainEventSource
from confidential_futures.gateway.state import (
    FileGatewayStateStore,
    GatewayStateStore,
    RedisGatewayStateStore,
)
from confidential_futures.gateway.submitters import ChainCallbackSubmitter, CoordinatorCallbackSubmitter
from confidential_futures.gateway.worker import GatewayWorker
from confidential_futures.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

LOCAL_GATEWAY_ADDRESS = "0x" + "6a" * 20
DEFAULT_ENGINE_STATE = Path(".fhe-engine.json")

# (trader, entry price, amount, collateral, is_long)
SIMULATED_POSITIONS = (
    ("0x" + "a1" * 20, 50_200, 100, 5_000, True),
    ("0x" + "b2" * 20, 50_100, 50, 2_000, False),
    ("0x" + "c3" * 20, 49_800, 20, 1_000, True),
)


class SimulatedClock:
    """Wall clock that the simulation can move forward."""

    def __init__(self, start: float) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _load_engine(path: Path) -> LocalFheEngine:
    if not path.exists():
        return LocalFheEngine()
    return LocalFheEngine.from_state(json.loads(path.read_text(encoding="utf-8")))


def _save_engine(engine: LocalFheEngine, path: Path) -> None:
    path.write_text(json.dumps(engine.export_state()), encoding="utf-8")


async def _simulate(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    database_url = args.database_url or "sqlite+aiosqlite:///:memory:"
    db = DatabaseManager(database_url)
    await db.init_schema_async()

    engine = LocalFheEngine()
    resolver = LocalResolver(engine)
    clock = SimulatedClock(time.time())
    gateway = (settings.protocol.gateway_address or LOCAL_GATEWAY_ADDRESS).lower()
    config = dataclasses.replace(ProtocolConfig.from_settings(settings.protocol), gateway=gateway)
    step = max(1, config.rate_limit_cooldown_seconds)

    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe_all(recorder)
    coordinator = SettlementCoordinator(db, engine, resolver, config, bus=bus, clock=clock)
    await coordinator.initialize()

    worker = GatewayWorker(
        BusEventSource(bus),
        resolver,
        CoordinatorCallbackSubmitter(coordinator, gateway),
        max_retries=settings.gateway.max_retries,
        retry_delay_seconds=0,
        decryption_timeout_seconds=config.decryption_timeout_seconds,
        clock=clock,
    )

    summary: dict[str, Any] = {}
    try:
        async with worker:
            owner = config.owner
            contract_id = await coordinator.create_contract(owner, args.underlying)
            clock.advance(step)
            nonce = secrets.randbelow(config.price_obfuscation_factor)
            await coordinator.set_reference_price(owner, contract_id, args.reference_price, nonce)

            for trader, entry_price, amount, collateral, is_long in SIMULATED_POSITIONS:
                await coordinator.open_position(trader, contract_id, entry_price, amount, collateral, is_long)

            clock.advance(config.contract_duration_seconds)
            request_id = await coordinator.request_settlement(owner, contract_id, args.final_price)
            await worker.drain()

            balances = {}
            for trader, *_ in SIMULATED_POSITIONS:
                handle = await coordinator.get_balance_handle(trader)
                balances[trader] = engine.reveal(handle) if handle else 0

            withdrawals = {}
            for trader, *_ in SIMULATED_POSITIONS:
                clock.advance(step)
                withdrawal_id = await coordinator.request_withdrawal(trader)
                await worker.drain()
                withdrawal = await coordinator.get_withdrawal_request(withdrawal_id)
                withdrawals[trader] = {
                    "request_id": withdrawal_id,
                    "status": withdrawal.status.value if withdrawal else None,
                    "amount": withdrawal.amount if withdrawal else None,
                }

            request = await coordinator.get_decryption_request(request_id)
            contract = await coordinator.get_contract(contract_id)
            summary = {
                "contract_id": contract_id,
                "underlying": args.underlying,
                "settled": contract.settled if contract else False,
                "settlement_request": {
                    "request_id": request_id,
                    "status": request.status.value if request else None,
                    "decrypted_price": request.decrypted_price if request else None,
                },
                "balances_after_settlement": balances,
                "withdrawals": withdrawals,
                "events": dict(Counter(recorder.names())),
                "gateway": await worker.get_pending_status(),
            }
    finally:
        if not db.is_memory:
            _save_engine(engine, args.engine_state)
        await db.dispose_async()
    return summary


async def _sweep(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    db = DatabaseManager(settings.database.url)
    engine = _load_engine(args.engine_state)
    coordinator = SettlementCoordinator(
        db,
        engine,
        LocalResolver(engine),
        ProtocolConfig.from_settings(settings.protocol),
    )
    try:
        missing = await db.missing_tables()
        if missing:
            logger.error("Ledger schema incomplete (missing %s); run init-db first", ", ".join(missing))
            return {"error": "ledger schema missing", "missing_tables": missing}
        refunded = await coordinator.sweep_timeouts()
    finally:
        await db.dispose_async()
    _save_engine(engine, args.engine_state)
    return {"refunded_requests": refunded}


async def _health(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    chain = settings.chain
    private_key = chain.gateway_private_key.get_secret_value() if chain.gateway_private_key else ""
    client = ChainClient(chain.rpc_url, fallback_rpc_url=chain.fallback_rpc_url)
    try:
        account = client.account_from_key(private_key)
        report = await client.health_check(account.address, min_balance_eth=chain.min_operator_balance_eth)
    finally:
        await client.aclose()
    return {"operator": account.address, **report.to_dict()}


def _build_state_store(settings: Settings) -> tuple[GatewayStateStore, Redis | None]:
    """State store selected by GATEWAY_STATE_BACKEND, plus the Redis client to close."""
    if settings.gateway.state_backend == "redis":
        redis = Redis.from_url(settings.redis.url)
        return RedisGatewayStateStore(redis), redis
    return FileGatewayStateStore(settings.gateway.state_file), None


async def _status(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    store, redis = _build_state_store(settings)
    try:
        state = await store.load()
    finally:
        if redis is not None:
            await redis.aclose()

    if state is None:
        return {"pending": [], "processed": 0, "failed": [], "saved_at": None}
    now = time.time()
    return {
        "pending": [
            {
                "request_id": r.request_id,
                "kind": r.kind.value,
                "age_seconds": int(now - r.created_at),
                "retries": r.retries,
            }
            for r in state.pending.values()
        ],
        "processed": len(state.processed),
        "failed": [f.to_dict() for f in state.failed.values()],
        "saved_at": state.saved_at,
    }


async def _gateway(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    """Run the gateway worker against the deployed coordinator until SIGINT/SIGTERM."""
    chain = settings.chain
    gateway = settings.gateway
    coordinator_address = chain.coordinator_address or ""
    private_key = chain.gateway_private_key.get_secret_value() if chain.gateway_private_key else ""

    client = ChainClient(chain.rpc_url, fallback_rpc_url=chain.fallback_rpc_url)
    store, redis = _build_state_store(settings)
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    try:
        submitter = ChainCallbackSubmitter(
            client,
            coordinator_address,
            private_key,
            gas_limit=chain.callback_gas_limit,
        )
        source = ChainEventSource(
            client,
            coordinator_address,
            poll_interval_seconds=chain.log_poll_interval_seconds,
            start_block=args.start_block,
        )
        worker = GatewayWorker(
            source,
            LocalResolver(_load_engine(args.engine_state)),
            submitter,
            state_store=store,
            chain=client,
            operator_address=submitter.address,
            min_operator_balance_eth=chain.min_operator_balance_eth,
            max_retries=gateway.max_retries,
            retry_delay_seconds=gateway.retry_delay_seconds,
            decryption_timeout_seconds=settings.protocol.decryption_timeout_seconds,
            timeout_check_interval_seconds=gateway.timeout_check_interval_seconds,
            status_interval_seconds=gateway.status_interval_seconds,
            max_concurrency=gateway.max_concurrency,
        )

        report = await worker.health_check()
        if report is not None and (not report.healthy or report.low_balance):
            logger.warning("Gateway operator %s: %s", submitter.address, report.to_dict())

        for sig in signals:
            loop.add_signal_handler(sig, worker.request_stop)
        try:
            await worker.run()
        finally:
            for sig in signals:
                loop.remove_signal_handler(sig)
        status = await worker.get_pending_status()
    finally:
        if redis is not None:
            await redis.aclose()
        await client.aclose()

    return {
        "operator": submitter.address,
        "next_block": source.next_block,
        "stats": dataclasses.asdict(worker.stats),
        **status,
    }


async def _init_db(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    return {"database_url": settings.redacted_summary()["database_url"], "initialized": True}


COMMAND_HANDLERS = {
    "simulate": _simulate,
    "sweep": _sweep,
    "health": _health,
    "status": _status,
    "init-db": _init_db,
    "gateway": _gateway,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="confidential_futures",
        description="Confidential futures settlement coordinator and gateway tools",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_simulate = subparsers.add_parser("simulate", help="End-to-end local settlement run")
    p_simulate.add_argument("--underlying", default="BTC")
    p_simulate.add_argument("--reference-price", type=int, default=50_000)
    p_simulate.add_argument("--final-price", type=int, default=51_000)
    p_simulate.add_argument("--database-url", default=None, help="Ledger URL (default: in-memory SQLite)")
    p_simulate.add_argument("--engine-state", type=Path, default=DEFAULT_ENGINE_STATE)

    p_sweep = subparsers.add_parser("sweep", help="Run the coordinator timeout sweep once")
    p_sweep.add_argument("--engine-state", type=Path, default=DEFAULT_ENGINE_STATE)

    subparsers.add_parser("health", help="Chain health check for the gateway key")
    subparsers.add_parser("status", help="Show persisted gateway tracking state")
    subparsers.add_parser("init-db", help="Create the ledger schema")

    p_gateway = subparsers.add_parser("gateway", help="Run the gateway worker against the deployed coordinator")
    p_gateway.add_argument("--start-block", type=int, default=None, help="First block to scan (default: latest)")
    p_gateway.add_argument("--engine-state", type=Path, default=DEFAULT_ENGINE_STATE)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse args, configure logging and dispatch. Returns the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
        settings.validate_requirements(command=args.command)
    except (ValidationError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.debug("Settings: %s", settings.redacted_summary())

    handler = COMMAND_HANDLERS[args.command]
    result = asyncio.run(handler(settings, args))
    print(json.dumps(result, indent=2, default=str))

    if args.command == "health":
        return 0 if result.get("healthy") and not result.get("low_balance") else 1
    return 1 if "error" in result else 0


if __name__ == "__main__":
    sys.exit(main())
