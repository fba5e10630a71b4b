"""Staged ERC20 transfer: pre-flight, sign, broadcast, confirm.

``TransferExecutor.execute`` is an async generator so callers can stream
progress to clients as it happens. Every attempt ends with exactly one
terminal event (``confirmed`` or ``failed``); nothing is retried. A broadcast
transaction is followed until the network settles it, whether or not anyone is
still listening.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING

from facepay.chain.abi import from_base_units, to_base_units
from facepay.chain.signer import GWEI, TransactionIntent, address_for_key, capped_gas_price, sign_transfer
from facepay.errors import (
    InsufficientBalance,
    Reverted,
    RpcError,
    RpcUnavailable,
    SignatureMismatch,
    SigningKeyUnavailable,
    TransactionError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from facepay.chain.rpc import JsonRpcClient
    from facepay.config import Settings

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("facepay.audit")


class Stage(StrEnum):
    IDLE = "idle"
    PARAMETERS_FETCHED = "parameters_fetched"
    DATA_ENCODED = "data_encoded"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class TransferEvent:
    """One progress step of a payment attempt."""

    stage: Stage
    message: str
    tx_hash: str | None = None
    success: bool | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def terminal(self) -> bool:
        return self.stage in (Stage.CONFIRMED, Stage.FAILED)

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage.value,
            "message": self.message,
            "tx_hash": self.tx_hash,
            "success": self.success,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


def failed_event(message: str, *, error: str | None = None, tx_hash: str | None = None) -> TransferEvent:
    return TransferEvent(Stage.FAILED, message, tx_hash=tx_hash, success=False, error=error)


class TransferExecutor:
    """Runs token transfers to the configured recipient over a ``JsonRpcClient``."""

    def __init__(self, settings: Settings, rpc: JsonRpcClient) -> None:
        self._settings = settings
        self._rpc = rpc
        self._token = settings.token_address
        self._symbol = settings.token_symbol
        self._decimals = settings.token_decimals
        self._trackers: set[asyncio.Task[TransferEvent]] = set()

    @property
    def recipient(self) -> str | None:
        return self._settings.merchant_address

    async def token_decimals(self) -> int:
        """Configured decimals, or the token contract's ``decimals()`` (queried once)."""
        if self._decimals is None:
            self._decimals = await self._rpc.decimals(self._token)
            logger.info("Token %s reports %d decimals", self._token, self._decimals)
        return self._decimals

    async def balance(self, owner: str) -> Decimal:
        units = await self._rpc.balance_of(self._token, owner)
        return from_base_units(units, await self.token_decimals())

    async def execute(self, sender: str, amount: Decimal, private_key: str) -> AsyncIterator[TransferEvent]:
        """Transfer ``amount`` tokens from ``sender`` to the configured recipient.

        Once the transaction is broadcast its receipt is followed by a task the
        executor owns, so closing this generator never stops tracking.
        """
        recipient = self.recipient
        submitted_hash: str | None = None
        tracker: asyncio.Task[TransferEvent] | None = None

        yield TransferEvent(Stage.IDLE, f"Preparing transfer of {amount} {self._symbol} from {sender}")
        try:
            if recipient is None:
                raise TransactionError("No merchant address configured")
            self._check_key(sender, private_key)

            decimals = await self.token_decimals()
            units = to_base_units(amount, decimals)

            balance = await self._rpc.balance_of(self._token, sender)
            if balance < units:
                raise InsufficientBalance(balance, units)

            nonce = await self._rpc.get_transaction_count(sender, "pending")
            gas_price = capped_gas_price(
                await self._rpc.gas_price(),
                self._settings.gas_price_multiplier,
                self._settings.gas_price_cap_gwei,
            )
            yield TransferEvent(
                Stage.PARAMETERS_FETCHED,
                f"Balance {from_base_units(balance, decimals)} {self._symbol}, nonce {nonce}, "
                f"gas price {Decimal(gas_price) / GWEI} gwei",
            )

            intent = TransactionIntent(
                sender=sender,
                recipient=recipient,
                token=self._token,
                amount=Decimal(amount),
                token_decimals=decimals,
                nonce=nonce,
                gas_price=gas_price,
                gas_limit=self._settings.gas_limit,
                chain_id=self._settings.chain_id,
            )
            yield TransferEvent(Stage.DATA_ENCODED, f"Encoded transfer of {units} base units to {recipient}")

            signed = sign_transfer(intent, private_key)
            yield TransferEvent(Stage.SIGNED, "Transaction signed", tx_hash=signed.tx_hash)

            submitted_hash = await self._rpc.send_raw_transaction(signed.raw_hex) or signed.tx_hash
            audit_logger.info("Submitted transfer %s: %s -> %s amount=%s", submitted_hash, sender, recipient, amount)
            tracker = self._track(submitted_hash, amount, recipient)
            yield TransferEvent(Stage.SUBMITTED, self._submitted_message(submitted_hash), tx_hash=submitted_hash)

            try:
                outcome = await asyncio.wait_for(asyncio.shield(tracker), self._settings.receipt_timeout)
            except TimeoutError:
                logger.warning(
                    "No receipt for %s after %.0fs, still tracking", submitted_hash, self._settings.receipt_timeout
                )
                outcome = _pending_event(submitted_hash)
            yield outcome
        except (TransactionError, ValueError) as exc:
            logger.warning("Transfer from %s failed: %s", sender, exc)
            yield failed_event(str(exc), error=type(exc).__name__, tx_hash=submitted_hash)
        finally:
            if tracker is not None and not tracker.done():
                logger.info("Receipt for %s is tracked in the background", submitted_hash)

    @property
    def pending_receipts(self) -> frozenset[str]:
        """Hashes of submitted transactions still being followed."""
        return frozenset(task.get_name() for task in self._trackers)

    async def aclose(self) -> None:
        """Cancel receipt tracking. Unresolved hashes are logged for manual follow-up."""
        trackers = list(self._trackers)
        for task in trackers:
            audit_logger.warning("Shutting down before %s was resolved", task.get_name())
            task.cancel()
        await asyncio.gather(*trackers, return_exceptions=True)

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _check_key(sender: str, private_key: str) -> None:
        try:
            derived = address_for_key(private_key)
        except (ValueError, TypeError) as exc:
            raise SigningKeyUnavailable(f"Unusable signing key for {sender}") from exc
        if derived.lower() != sender.lower():
            raise SignatureMismatch(f"Signing key does not belong to {sender}")

    def _submitted_message(self, tx_hash: str) -> str:
        if self._settings.explorer_url:
            return f"Transaction submitted: {self._settings.explorer_url}{tx_hash}"
        return f"Transaction submitted: {tx_hash}"

    def _track(self, tx_hash: str, amount: Decimal, recipient: str) -> asyncio.Task[TransferEvent]:
        task = asyncio.create_task(self._follow_receipt(tx_hash, amount, recipient), name=tx_hash)
        self._trackers.add(task)
        task.add_done_callback(self._tracker_done)
        return task

    def _tracker_done(self, task: asyncio.Task[TransferEvent]) -> None:
        self._trackers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Receipt tracking for %s crashed", task.get_name(), exc_info=task.exception())

    async def _follow_receipt(self, tx_hash: str, amount: Decimal, recipient: str) -> TransferEvent:
        receipt = await self._wait_for_receipt(tx_hash)
        if receipt is None:
            audit_logger.warning(
                "Stopped tracking %s after %.0fs without a receipt", tx_hash, self._settings.receipt_tracking_timeout
            )
            return _pending_event(tx_hash)

        block = receipt.get("blockNumber")
        if not _receipt_succeeded(receipt):
            audit_logger.info("Reverted transfer %s in block %s", tx_hash, block)
            reverted = Reverted(tx_hash)
            return failed_event(str(reverted), error=type(reverted).__name__, tx_hash=tx_hash)

        audit_logger.info("Confirmed transfer %s in block %s", tx_hash, block)
        return TransferEvent(
            Stage.CONFIRMED,
            f"Transferred {amount} {self._symbol} to {recipient}",
            tx_hash=tx_hash,
            success=True,
        )

    async def _wait_for_receipt(self, tx_hash: str) -> dict[str, object] | None:
        deadline = time.monotonic() + self._settings.receipt_tracking_timeout
        while True:
            try:
                receipt = await self._rpc.get_transaction_receipt(tx_hash)
            except (RpcUnavailable, RpcError) as exc:
                logger.warning("Receipt poll for %s failed, will retry: %s", tx_hash, exc)
                receipt = None
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self._settings.receipt_poll_interval)


def _pending_event(tx_hash: str) -> TransferEvent:
    return failed_event(
        f"Transaction {tx_hash} still pending; it may still confirm",
        error="ReceiptTimeout",
        tx_hash=tx_hash,
    )


def _receipt_succeeded(receipt: dict[str, object]) -> bool:
    try:
        return int(str(receipt.get("status", "0x0")), 16) == 1
    except ValueError:
        logger.warning("Unreadable receipt status %r", receipt.get("status"))
        return False
