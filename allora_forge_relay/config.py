"""Typed relay configuration built from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Tuple, TypeVar

from .environment import env_flag
from .errors import ConfigError

__all__ = ["RelayConfig", "DEFAULT_CHAIN_ID", "DEFAULT_RPC_URL", "DEFAULT_GRPC_URL"]

DEFAULT_CHAIN_ID = "allora-testnet-1"
DEFAULT_RPC_URL = "https://allora-rpc.testnet.allora.network"
DEFAULT_GRPC_URL = "grpc+https://allora-grpc.testnet.allora.network:443/"
DEFAULT_REST_URL = "https://allora-api.testnet.allora.network"
DEFAULT_FEE_DENOM = "uallo"

_POLICIES = ("throw", "skip", "zero")
_READERS = ("cli", "sdk")
_SECRET_BACKENDS = ("memory", "vault")
_ENVIRONMENTS = ("development", "production", "test")

T = TypeVar("T")


@dataclass(frozen=True)
class RelayConfig:
    environment: str = "development"
    log_level: str = "INFO"

    # Network
    rpc_urls: Tuple[str, ...] = (DEFAULT_RPC_URL,)
    grpc_url: str = DEFAULT_GRPC_URL
    rest_url: str = DEFAULT_REST_URL
    chain_id: str = DEFAULT_CHAIN_ID
    chain_reader: str = "cli"
    allorad_binary: str = "allorad"
    keyring_backend: str = "test"
    fee_denom: str = DEFAULT_FEE_DENOM
    default_gas_price: str = "10uallo"
    average_block_time_seconds: int = 5

    # Connector retry policy
    chain_max_retries: int = 3
    chain_retry_base_ms: int = 1000
    chain_command_timeout_s: float = 30.0

    # Job queue
    job_concurrency: int = 5
    job_rate_max: int = 100
    job_rate_duration_ms: int = 10_000
    job_max_attempts: int = 3
    job_backoff_ms: int = 5000
    webhook_timeout_s: float = 10.0

    # Funding
    treasury_secret_key: Optional[str] = None
    enable_preflight_balance_check: bool = True
    min_wallet_balance: int = 20_000
    topup_amount: int = 50_000

    # Fees and broadcast
    submission_fixed_gas_limit: int = 180_000
    universal_gas_limit: int = 200_000
    gas_adjustment: float = 1.3
    fast_broadcast: bool = False
    dry_run_transactions: bool = False

    # Submission gating
    nonce_scan_depth: int = 200
    bypass_can_submit: bool = False
    invalid_model_output_policy: str = "throw"

    # Performance metrics
    enable_performance_collection: bool = True
    performance_interval_s: int = 900

    # Storage
    database_url: str = "sqlite:///data/relay.db"
    secrets_backend: str = "memory"
    vault_addr: Optional[str] = None
    vault_token: Optional[str] = field(default=None, repr=False)
    vault_namespace: Optional[str] = None
    vault_secret_path: str = "secret/data/mcp"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """Validate and collect every recognised option.

        Raises
        ------
        ConfigError
            When a value cannot be parsed or is outside its allowed range. The
            message lists every offending variable so the process can refuse to
            start with a single, complete report.
        """

        env = os.environ if environ is None else environ
        problems: list[str] = []

        def read(name: str, default: T, parse: Callable[[str], T], check: Callable[[T], bool] = lambda _: True) -> T:
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                value = parse(raw.strip())
            except ValueError as exc:
                problems.append(f"{name}: {exc}")
                return default
            if not check(value):
                problems.append(f"{name}: value {raw!r} is out of range")
                return default
            return value

        def flag(name: str, default: bool) -> bool:
            try:
                return env_flag(name, default, env)
            except ValueError as exc:
                problems.append(str(exc))
                return default

        def choice(name: str, default: str, allowed: Tuple[str, ...]) -> str:
            return read(name, default, lambda raw: raw.lower(), lambda value: value in allowed)

        positive = lambda value: value > 0  # noqa: E731
        non_negative = lambda value: value >= 0  # noqa: E731

        rpc_urls = tuple(
            url.strip() for url in env.get("ALLORA_RPC_URLS", env.get("ALLORA_RPC_URL", "")).split(",") if url.strip()
        ) or (DEFAULT_RPC_URL,)

        config = cls(
            environment=choice("RELAY_ENV", "development", _ENVIRONMENTS),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            rpc_urls=rpc_urls,
            grpc_url=env.get("ALLORA_GRPC_URL", DEFAULT_GRPC_URL),
            rest_url=env.get("ALLORA_REST_URL", DEFAULT_REST_URL),
            chain_id=env.get("CHAIN_ID", DEFAULT_CHAIN_ID),
            chain_reader=choice("ALLORA_CHAIN_READER", "cli", _READERS),
            allorad_binary=env.get("ALLORAD_BINARY", "allorad"),
            keyring_backend=env.get("ALLORA_KEYRING_BACKEND", "test"),
            fee_denom=env.get("FEE_DENOM", DEFAULT_FEE_DENOM),
            default_gas_price=env.get("DEFAULT_GAS_PRICE", "10uallo"),
            average_block_time_seconds=read("AVERAGE_BLOCK_TIME_SECONDS", 5, int, positive),
            chain_max_retries=read("CHAIN_MAX_RETRIES", 3, int, positive),
            chain_retry_base_ms=read("CHAIN_RETRY_BASE_MS", 1000, int, non_negative),
            chain_command_timeout_s=read("CHAIN_COMMAND_TIMEOUT_S", 30.0, float, positive),
            job_concurrency=read("JOB_CONCURRENCY", 5, int, positive),
            job_rate_max=read("JOB_RATE_MAX", 100, int, positive),
            job_rate_duration_ms=read("JOB_RATE_DURATION", 10_000, int, positive),
            job_max_attempts=read("JOB_MAX_ATTEMPTS", 3, int, positive),
            job_backoff_ms=read("JOB_BACKOFF_MS", 5000, int, non_negative),
            webhook_timeout_s=read("WEBHOOK_TIMEOUT_S", 10.0, float, positive),
            treasury_secret_key=env.get("TREASURY_MNEMONIC_SECRET_KEY") or None,
            enable_preflight_balance_check=flag("ENABLE_PREFLIGHT_BALANCE_CHECK", True),
            min_wallet_balance=read("MIN_WALLET_BALANCE_UALLO", 20_000, int, non_negative),
            topup_amount=read("TOPUP_AMOUNT_UALLO", 50_000, int, positive),
            submission_fixed_gas_limit=read("SUBMISSION_FIXED_GAS_LIMIT", 180_000, int, positive),
            universal_gas_limit=read("UNIVERSAL_GAS_LIMIT", 200_000, int, positive),
            gas_adjustment=read("GAS_ADJUSTMENT", 1.3, float, positive),
            fast_broadcast=flag("JOBS_FAST_BROADCAST", False),
            dry_run_transactions=flag("DRY_RUN_TRANSACTIONS", False),
            nonce_scan_depth=read("NONCE_SCAN_DEPTH", 200, int, positive),
            bypass_can_submit=flag("JOBS_BYPASS_CAN_SUBMIT", False),
            invalid_model_output_policy=choice("INVALID_MODEL_OUTPUT_POLICY", "throw", _POLICIES),
            enable_performance_collection=flag("ENABLE_PERFORMANCE_COLLECTION", True),
            performance_interval_s=read("PERFORMANCE_INTERVAL_SECONDS", 900, int, positive),
            database_url=env.get("DATABASE_URL", "sqlite:///data/relay.db"),
            secrets_backend=choice("SECRETS_BACKEND", "memory", _SECRET_BACKENDS),
            vault_addr=env.get("VAULT_ADDR") or None,
            vault_token=env.get("VAULT_TOKEN") or None,
            vault_namespace=env.get("VAULT_NAMESPACE") or None,
            vault_secret_path=env.get("VAULT_SECRET_PATH", "secret/data/mcp"),
        )

        if config.bypass_can_submit and config.is_production:
            problems.append("JOBS_BYPASS_CAN_SUBMIT: not allowed in production")
        if config.secrets_backend == "vault" and not (config.vault_addr and config.vault_token):
            problems.append("SECRETS_BACKEND=vault requires VAULT_ADDR and VAULT_TOKEN")

        if problems:
            raise ConfigError("Invalid or missing environment variables: " + "; ".join(problems))
        return config
