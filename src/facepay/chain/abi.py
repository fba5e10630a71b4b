"""ERC20 call-data encoding and decoding."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from eth_utils import function_signature_to_4byte_selector, is_address, to_canonical_address

TRANSFER_SELECTOR = function_signature_to_4byte_selector("transfer(address,uint256)")
BALANCE_OF_SELECTOR = function_signature_to_4byte_selector("balanceOf(address)")
ALLOWANCE_SELECTOR = function_signature_to_4byte_selector("allowance(address,address)")
DECIMALS_CALL = "0x" + function_signature_to_4byte_selector("decimals()").hex()

_UINT256_MAX = 2**256 - 1


def to_base_units(amount: Decimal | str | int, decimals: int) -> int:
    """Convert a human-unit amount into integer base units, exactly.

    Raises:
        ValueError: If the amount is not positive or has more fractional digits than ``decimals``.
    """
    try:
        value = Decimal(amount)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}") from None
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Amount must be positive, got {amount}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} fractional digits")
    units = int(scaled)
    if units > _UINT256_MAX:
        raise ValueError(f"Amount {amount} does not fit in uint256")
    return units


def from_base_units(units: int, decimals: int) -> Decimal:
    return Decimal(units).scaleb(-decimals)


def _encode_address(address: str) -> bytes:
    if not is_address(address):
        raise ValueError(f"Invalid address: {address}")
    return to_canonical_address(address).rjust(32, b"\x00")


def _encode_uint256(value: int) -> bytes:
    if not 0 <= value <= _UINT256_MAX:
        raise ValueError(f"Value out of uint256 range: {value}")
    return value.to_bytes(32, "big")


def encode_transfer(recipient: str, amount_base_units: int) -> str:
    """Call data for ``transfer(address,uint256)``."""
    payload = TRANSFER_SELECTOR + _encode_address(recipient) + _encode_uint256(amount_base_units)
    return "0x" + payload.hex()


def encode_balance_of(owner: str) -> str:
    return "0x" + (BALANCE_OF_SELECTOR + _encode_address(owner)).hex()


def encode_allowance(owner: str, spender: str) -> str:
    return "0x" + (ALLOWANCE_SELECTOR + _encode_address(owner) + _encode_address(spender)).hex()


def decode_uint256(data: str) -> int:
    """Decode the first 32-byte word of an ``eth_call`` result.

    Raises:
        ValueError: If the result is empty or not hex.
    """
    raw = data[2:] if data.startswith(("0x", "0X")) else data
    if not raw:
        raise ValueError("Empty call result")
    return int(raw[:64], 16)
