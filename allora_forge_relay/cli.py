from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Optional

from .config import RelayConfig
from .environment import load_environment
from .errors import ConfigError
from .logging_utils import get_stage_logger, initialise_logging
from .models import Job, JobState
from .performance import PerformanceCollector
from .runtime import Relay


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Allora worker submission relay")
    parser.add_argument("--root", type=Path, default=Path.cwd(), help="Directory holding .env and data/")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the scheduler and worker pool until interrupted")
    run_parser.add_argument("--drain-timeout", type=float, default=120.0, help="Seconds to wait for in-flight jobs")

    submit_parser = subparsers.add_parser("submit", help="Run one submission attempt for a model")
    submit_parser.add_argument("--model-id", required=True, help="Registered model id")

    nonce_parser = subparsers.add_parser("nonce", help="Print the open worker nonce of a topic")
    nonce_parser.add_argument("--topic-id", type=int, required=True, help="Topic id")

    subparsers.add_parser("create-wallet", help="Provision a new signing wallet")

    register_parser = subparsers.add_parser("register-model", help="Create a wallet and register a model")
    register_parser.add_argument("--topic-id", type=int, required=True, help="Topic id")
    register_parser.add_argument("--webhook-url", required=True, help="Model prediction webhook")
    register_parser.add_argument("--max-gas-price", help="Gas price override, e.g. 20uallo")

    subparsers.add_parser("collect-performance", help="Store one EMA score sample per active model")

    history_parser = subparsers.add_parser("performance-history", help="Print stored EMA scores of a model")
    history_parser.add_argument("--model-id", required=True, help="Registered model id")

    return parser


async def _submit(relay: Relay, model_id: str) -> int:
    logger = get_stage_logger("submit")
    details = await asyncio.to_thread(relay.store.model_signing_details, model_id)
    if details is None:
        logger.error("Model %s not found", model_id)
        return 1
    job = Job(model_id=details.model_id, webhook_url=details.webhook_url, topic_id=details.topic_id, attempts=1)
    try:
        result = await relay.pipeline.process(job)
    finally:
        await relay.predictions.close()

    print(f"{result.state.value}: {result.reason}")
    if result.state is JobState.SUCCEEDED:
        logger.info("Submission succeeded (tx=%s)", result.reason)
        return 0
    if result.state is JobState.SKIPPED:
        logger.info("Submission skipped: %s", result.reason)
        return 0
    logger.error("Submission failed: %s", result.reason)
    return 1


async def _nonce(relay: Relay, topic_id: int) -> int:
    nonce = await relay.resolver.derive_open_nonce(topic_id)
    print(nonce if nonce is not None else "none")
    return 0


def _warn_if_ephemeral(relay: Relay) -> None:
    if relay.config.secrets_backend == "memory":
        get_stage_logger("wallet").warning("In-memory secret store: the mnemonic is lost when this process exits")


async def _create_wallet(relay: Relay) -> int:
    wallet = await relay.provisioner.create_wallet()
    if wallet is None:
        return 1
    print(f"wallet_id={wallet.id} address={wallet.address} secret_ref={wallet.secret_ref}")
    _warn_if_ephemeral(relay)
    return 0


async def _register_model(relay: Relay, topic_id: int, webhook_url: str, max_gas_price: Optional[str]) -> int:
    wallet = await relay.provisioner.create_wallet()
    if wallet is None:
        return 1
    model_id = await asyncio.to_thread(relay.store.add_model, topic_id, webhook_url, wallet.id, max_gas_price)
    print(f"model_id={model_id} topic_id={topic_id} address={wallet.address}")
    _warn_if_ephemeral(relay)
    return 0


async def _collect_performance(relay: Relay) -> int:
    collector = PerformanceCollector(relay.store, relay.connector, interval=relay.config.performance_interval_s)
    stored = await collector.collect_once()
    print(f"stored={stored}")
    return 0


def _performance_history(relay: Relay, model_id: str) -> int:
    for metric in relay.store.performance_history(model_id):
        print(f"{metric.timestamp.isoformat()} {metric.ema_score}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    root = args.root.resolve()
    load_environment(root)
    try:
        config = RelayConfig.from_env()
    except ConfigError as exc:
        parser.exit(1, f"Configuration error: {exc}\n")
    initialise_logging(root, config.log_level)

    try:
        relay = Relay.from_config(config)
    except ConfigError as exc:
        parser.exit(1, f"Configuration error: {exc}\n")

    if args.command == "run":
        asyncio.run(relay.run(drain_timeout=args.drain_timeout))
        return 0
    if args.command == "submit":
        return asyncio.run(_submit(relay, args.model_id))
    if args.command == "nonce":
        return asyncio.run(_nonce(relay, args.topic_id))
    if args.command == "create-wallet":
        return asyncio.run(_create_wallet(relay))
    if args.command == "register-model":
        return asyncio.run(_register_model(relay, args.topic_id, args.webhook_url, args.max_gas_price))
    if args.command == "collect-performance":
        return asyncio.run(_collect_performance(relay))
    if args.command == "performance-history":
        return _performance_history(relay, args.model_id)

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
