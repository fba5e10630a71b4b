"""Exception hierarchy shared by the extraction, storage and chain layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class FacePayError(Exception):
    """Root of all FacePay errors."""


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class ExtractionError(FacePayError):
    """A face image could not be turned into an embedding. Callers may retake the image."""


class ImageDecodeFailed(ExtractionError):
    pass


class NoFaceDetected(ExtractionError):
    pass


class LowConfidenceDetection(ExtractionError):
    pass


class MultipleFacesDetected(ExtractionError):
    pass


class NoUsableSamples(ExtractionError):
    """Every sample in an average-embedding request failed."""

    def __init__(self, errors: Sequence[ExtractionError]) -> None:
        self.errors = list(errors)
        kinds = ", ".join(type(e).__name__ for e in self.errors) or "no samples supplied"
        super().__init__(f"No usable face samples ({kinds})")


class ModelUnavailable(ExtractionError):
    """The configured embedding backend could not be initialised."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StoreError(FacePayError):
    pass


class StorageIOError(StoreError):
    """Reading or writing the persistence medium failed."""


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionError(FacePayError):
    """A payment attempt failed. Terminal for that attempt."""


class AccountNotRegistered(TransactionError):
    pass


class InsufficientBalance(TransactionError):
    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient balance: have {balance}, need {required} (base units)")


class SignatureMismatch(TransactionError):
    """The signing key does not belong to the claimed sender."""


class SigningKeyUnavailable(TransactionError):
    pass


class RpcUnavailable(TransactionError):
    """The RPC endpoint could not be reached or kept rate limiting."""


class RpcError(TransactionError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, code: int | None, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message if code is None else f"{message} (code {code})")


class NonceMismatch(RpcError):
    pass


class Reverted(TransactionError):
    def __init__(self, tx_hash: str) -> None:
        self.tx_hash = tx_hash
        super().__init__(f"Transaction {tx_hash} reverted")
