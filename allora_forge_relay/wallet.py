"""Per-model wallet creation and treasury funding."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Optional

from .config import RelayConfig
from .connector import LedgerConnector
from .errors import SecretNotFoundError
from .models import CreatedWallet, FundingCheck, TxOutcome
from .secret_store import SecretStore
from .signing import address_for, generate_mnemonic
from .store import RelayStore

logger = logging.getLogger(__name__)

__all__ = ["SECRET_REF_PREFIX", "WalletProvisioner"]

SECRET_REF_PREFIX = "wallet_mnemonic_"


class WalletProvisioner:
    """Creates signing wallets and keeps them funded.

    A wallet row never exists without its secret and a secret never outlives a
    failed insert of its row: when the insert fails the freshly stored secret
    is deleted before the failure is reported.
    """

    def __init__(
        self,
        secrets: SecretStore,
        store: RelayStore,
        connector: LedgerConnector,
        config: RelayConfig,
        mnemonic_factory: Callable[[], str] = generate_mnemonic,
    ) -> None:
        self.secrets = secrets
        self.store = store
        self.connector = connector
        self.config = config
        self._mnemonic_factory = mnemonic_factory

    async def create_wallet(self) -> Optional[CreatedWallet]:
        try:
            mnemonic = self._mnemonic_factory()
            address = address_for(mnemonic)
        except ValueError as exc:
            logger.error("Key generation failed: %s", exc)
            return None

        secret_ref = f"{SECRET_REF_PREFIX}{uuid.uuid4()}"
        try:
            await asyncio.to_thread(self.secrets.put, secret_ref, mnemonic)
        except Exception as exc:  # noqa: BLE001 - nothing to roll back yet
            logger.error("Failed to store secret for %s: %s", address, exc)
            return None

        try:
            wallet_id = await asyncio.to_thread(self.store.insert_wallet, address, secret_ref)
        except Exception as exc:  # noqa: BLE001 - compensated below
            logger.error("Failed to persist wallet %s, rolling back secret %s: %s", address, secret_ref, exc)
            await self._rollback_secret(secret_ref)
            return None

        logger.info("Created wallet %s for address %s", wallet_id, address)
        return CreatedWallet(id=wallet_id, address=address, secret_ref=secret_ref)

    async def _rollback_secret(self, secret_ref: str) -> None:
        try:
            await asyncio.to_thread(self.secrets.delete, secret_ref)
        except Exception as exc:  # noqa: BLE001 - escalated, not raised
            logger.error("ORPHANED SECRET %s could not be deleted after a failed wallet insert: %s", secret_ref, exc)
            return
        logger.info("Rolled back secret %s", secret_ref)

    async def signing_secret(self, secret_ref: str) -> str:
        mnemonic = await asyncio.to_thread(self.secrets.get, secret_ref)
        if not mnemonic:
            raise SecretNotFoundError(f"No secret stored under {secret_ref}")
        return mnemonic

    async def fund(self, address: str, amount: int) -> TxOutcome:
        """Send ``amount`` fee-denom units from the treasury to ``address``."""

        if not self.config.treasury_secret_key:
            logger.error("TREASURY_MNEMONIC_SECRET_KEY is not configured; cannot fund %s", address)
            return TxOutcome(error="treasury not configured")
        try:
            treasury = await self.signing_secret(self.config.treasury_secret_key)
        except Exception as exc:  # noqa: BLE001 - funding is best effort
            logger.error("Treasury secret unavailable: %s", exc)
            return TxOutcome(error=str(exc) or type(exc).__name__)
        return await self.connector.transfer(treasury, address, amount)

    async def ensure_funded(self, address: str) -> FundingCheck:
        """Top up ``address`` when it is below the configured floor.

        Best effort: failures are logged and reported in the result, never
        raised, so the submission can go ahead and record what the ledger says.
        """

        balance = await self.connector.get_balance(address)
        if balance is None:
            logger.warning("Balance of %s unavailable; skipping top-up", address)
            return FundingCheck(balance=None)
        if balance >= self.config.min_wallet_balance:
            return FundingCheck(balance=balance)

        logger.info(
            "Balance of %s is %s (< %s), topping up %s",
            address,
            balance,
            self.config.min_wallet_balance,
            self.config.topup_amount,
        )
        outcome = await self.fund(address, self.config.topup_amount)
        if not outcome.ok:
            logger.warning("Top-up of %s failed: %s", address, outcome.error)
            return FundingCheck(balance=balance)

        balance_after = await self.connector.get_balance(address)
        logger.info("Topped up %s: tx=%s balance=%s", address, outcome.tx_hash, balance_after)
        return FundingCheck(balance=balance, topped_up=True, tx_hash=outcome.tx_hash, balance_after=balance_after)
