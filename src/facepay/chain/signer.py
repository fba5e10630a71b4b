"""Transaction intents and local signing with eth-account."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from eth_account import Account
from eth_utils import to_checksum_address

from facepay.chain.abi import encode_transfer, to_base_units
from facepay.errors import SignatureMismatch

logger = logging.getLogger(__name__)

GWEI = 10**9


@dataclass(frozen=True)
class TransactionIntent:
    """Everything needed to build one ERC20 transfer transaction."""

    sender: str
    recipient: str
    token: str
    amount: Decimal
    token_decimals: int
    nonce: int
    gas_price: int
    gas_limit: int
    chain_id: int

    @property
    def amount_base_units(self) -> int:
        return to_base_units(self.amount, self.token_decimals)

    @property
    def data(self) -> str:
        return encode_transfer(self.recipient, self.amount_base_units)

    def to_transaction(self) -> dict[str, object]:
        """Legacy EIP-155 transaction envelope."""
        return {
            "to": to_checksum_address(self.token),
            "value": 0,
            "data": self.data,
            "gas": self.gas_limit,
            "gasPrice": self.gas_price,
            "nonce": self.nonce,
            "chainId": self.chain_id,
        }


@dataclass(frozen=True)
class SignedTransaction:
    raw: bytes
    tx_hash: str
    intent: TransactionIntent

    @property
    def raw_hex(self) -> str:
        return "0x" + self.raw.hex()


def capped_gas_price(
    current: int,
    multiplier: Decimal = Decimal("1.2"),
    cap_gwei: Decimal = Decimal(20),
) -> int:
    """Scale the node's gas price by ``multiplier`` but never exceed ``cap_gwei``."""
    boosted = int((Decimal(current) * multiplier).to_integral_value(rounding=ROUND_DOWN))
    cap = int(cap_gwei * GWEI)
    return min(boosted, cap)


def address_for_key(private_key: str) -> str:
    return Account.from_key(private_key).address


def sign_transfer(intent: TransactionIntent, private_key: str) -> SignedTransaction:
    """Sign ``intent`` after checking the key belongs to ``intent.sender``.

    Raises:
        SignatureMismatch: If the key derives a different address.
    """
    derived = address_for_key(private_key)
    if derived.lower() != intent.sender.lower():
        raise SignatureMismatch(f"Signing key belongs to {derived}, not {intent.sender}")

    signed = Account.sign_transaction(intent.to_transaction(), private_key)
    tx_hash = "0x" + bytes(signed.hash).hex()
    logger.debug("Signed transfer nonce=%d hash=%s", intent.nonce, tx_hash)
    return SignedTransaction(raw=bytes(signed.raw_transaction), tx_hash=tx_hash, intent=intent)
