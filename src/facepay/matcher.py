"""Best-candidate face matching with a calibrated acceptance threshold.

A match returned from here is the only signal that authorises a transfer, so
every comparison is written to the ``facepay.audit`` logger, including
rejected near-misses. Scores never leave this module except through
``MatchResult`` and the audit trail.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from facepay.domain import MatchResult, Provenance

if TYPE_CHECKING:
    from collections.abc import Sequence

    from facepay.domain import Embedding, Registration

audit_logger = logging.getLogger("facepay.audit")


class SimilarityMetric(StrEnum):
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return ``dot(a, b) / (|a| * |b|)``; 0.0 for zero vectors or length mismatch."""
    if len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb)) / (norm_a * norm_b)


def euclidean_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return ``max(0, 1 - sqrt(mean((a - b)^2)))``; 0.0 on length mismatch."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    diff = np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)
    distance = math.sqrt(float(np.mean(diff * diff)))
    return max(0.0, 1.0 - distance)


_METRICS = {
    SimilarityMetric.COSINE: cosine_similarity,
    SimilarityMetric.EUCLIDEAN: euclidean_similarity,
}


@dataclass(frozen=True)
class MatchPolicy:
    """Scoring metric and the minimum score a best candidate must reach.

    ``degraded_threshold`` applies to hash-fallback queries only; when unset
    the regular threshold is used.
    """

    metric: SimilarityMetric = SimilarityMetric.COSINE
    threshold: float = 0.75
    degraded_threshold: float | None = None

    def score(self, a: Sequence[float], b: Sequence[float]) -> float:
        return _METRICS[self.metric](a, b)

    def threshold_for(self, provenance: Provenance | None) -> float:
        if provenance is Provenance.HASH_FALLBACK and self.degraded_threshold is not None:
            return self.degraded_threshold
        return self.threshold


def find_best_match(
    query: Embedding,
    candidates: Sequence[Registration],
    policy: MatchPolicy,
    *,
    provenance: Provenance | None = None,
) -> MatchResult | None:
    """Score every candidate and return the best one if it clears the threshold.

    Ties keep the earliest candidate: a later candidate replaces the running
    best only with a strictly greater score. An empty candidate list, or a best
    score below the threshold, yields ``None``.

    Args:
        query: Embedding of the presented face.
        candidates: Registered accounts, in store order.
        policy: Metric and thresholds.
        provenance: Provenance of ``query``. When given, candidates from a
            different extraction strategy are skipped.
    """
    threshold = policy.threshold_for(provenance)
    audit_logger.info(
        "match.start candidates=%d metric=%s threshold=%.4f provenance=%s",
        len(candidates),
        policy.metric.value,
        threshold,
        provenance.value if provenance is not None else "-",
    )

    best: Registration | None = None
    best_score = -math.inf
    for candidate in candidates:
        if provenance is not None and candidate.provenance is not provenance:
            audit_logger.info(
                "match.skip account=%s provenance=%s",
                candidate.account_id,
                candidate.provenance.value,
            )
            continue
        score = policy.score(query, candidate.embedding)
        audit_logger.info("match.compare account=%s score=%.6f", candidate.account_id, score)
        if best is None or score > best_score:
            best = candidate
            best_score = score

    if best is None:
        audit_logger.info("match.reject reason=no_candidates")
        return None

    if best_score < threshold:
        audit_logger.warning(
            "match.reject reason=below_threshold best_account=%s best_score=%.6f threshold=%.4f",
            best.account_id,
            best_score,
            threshold,
        )
        return None

    audit_logger.info("match.accept account=%s score=%.6f threshold=%.4f", best.account_id, best_score, threshold)
    return MatchResult(
        account_id=best.account_id,
        display_name=best.display_name,
        score=best_score,
        accepted=True,
    )
