"""Core value types: embeddings, registrations and match results."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

EMBEDDING_DIM = 128

Embedding = tuple[float, ...]


class Provenance(StrEnum):
    """Which extraction strategy produced an embedding."""

    ENGINEERED = "engineered"
    NEURAL = "neural"
    HASH_FALLBACK = "hash_fallback"


def as_embedding(values: Iterable[float], dim: int = EMBEDDING_DIM) -> Embedding:
    """Validate and freeze a vector into an ``Embedding``.

    Raises:
        ValueError: On wrong length or non-finite values.
    """
    vector = tuple(float(v) for v in values)
    if len(vector) != dim:
        raise ValueError(f"Embedding must have {dim} dimensions, got {len(vector)}")
    if not all(math.isfinite(v) for v in vector):
        raise ValueError("Embedding contains non-finite values")
    return vector


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Registration:
    """A registered account: one embedding per wallet address."""

    account_id: str
    display_name: str
    embedding: Embedding
    provenance: Provenance
    registered_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "account_id": self.account_id,
            "display_name": self.display_name,
            "embedding": list(self.embedding),
            "provenance": self.provenance.value,
            "registered_at": self.registered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Registration:
        registered_at = datetime.fromisoformat(str(data["registered_at"]))
        if registered_at.tzinfo is None:
            registered_at = registered_at.replace(tzinfo=UTC)
        return cls(
            account_id=str(data["account_id"]),
            display_name=str(data["display_name"]),
            embedding=as_embedding(data["embedding"]),  # type: ignore[arg-type]
            provenance=Provenance(str(data["provenance"])),
            registered_at=registered_at,
        )


@dataclass(frozen=True)
class MatchResult:
    """Outcome of comparing a query embedding against the registered accounts."""

    account_id: str
    display_name: str
    score: float
    accepted: bool
