"""
Similarity Matcher - Ranking Stored Faces Against a Query Face
==============================================================

Scores every candidate descriptor against one query descriptor and keeps
the candidates the score distribution supports.

Scoring policies (pick one per deployment, never mix within a comparison):
- cosine:      s = dot(a/|a|, b/|b|)            range [-1, 1]
- exponential: s = exp(-|a - b|)                range (0, 1]

Selection strategies:
- first_hit:      an item matches on its first descriptor scoring above a
                  fixed threshold; input order is kept.
- adaptive_top_k: each item contributes its best score; the acceptance
                  threshold is max(floor, mean - 2 * std) over those best
                  scores; survivors are ranked and capped.

Matching is a linear scan, sized for one folder of photos.
"""

import logging
import math
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from recollect import config
from recollect.errors import DescriptorShapeError, EmptyCandidateSetError
from recollect.face_utils import DetectedFace

logger = logging.getLogger(__name__)


class ScoringPolicy(str, Enum):
    """Supported similarity formulas (higher = more similar)."""
    COSINE = "cosine"
    EXPONENTIAL = "exponential"


class SelectionStrategy(str, Enum):
    """How scored candidates are turned into a match list."""
    FIRST_HIT = "first_hit"
    ADAPTIVE_TOP_K = "adaptive_top_k"


# ============================================================================
# Vector helpers
# ============================================================================

class NormalizedDescriptor(NamedTuple):
    vector: np.ndarray
    degenerate: bool


def as_descriptor(values: Any) -> np.ndarray:
    """
    Coerce a sequence of floats into a 1-D float64 vector.

    Raises:
        DescriptorShapeError: empty, multi-dimensional, or non-finite input
    """
    try:
        vector = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise DescriptorShapeError(f"Descriptor is not numeric: {exc}") from exc

    if vector.ndim != 1 or vector.size == 0:
        raise DescriptorShapeError(f"Descriptor must be a non-empty 1-D vector, got shape {vector.shape}")
    if not np.all(np.isfinite(vector)):
        raise DescriptorShapeError("Descriptor contains non-finite values")
    return vector


def normalize(descriptor: Any) -> NormalizedDescriptor:
    """
    Scale a descriptor to unit L2 norm.

    A zero vector is returned unchanged and flagged degenerate; callers
    must treat it as never matching.
    """
    vector = as_descriptor(descriptor)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return NormalizedDescriptor(vector, True)
    return NormalizedDescriptor(vector / norm, False)


def _check_shapes(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape != b.shape:
        raise DescriptorShapeError(f"Descriptor length mismatch: {a.shape[0]} vs {b.shape[0]}")


def cosine_score(a: Any, b: Any) -> float:
    """
    Cosine similarity in [-1, 1].

    Returns 0.0 when either vector has zero magnitude.
    """
    a, b = as_descriptor(a), as_descriptor(b)
    _check_shapes(a, b)

    unit_a, unit_b = normalize(a), normalize(b)
    if unit_a.degenerate or unit_b.degenerate:
        return 0.0
    # rounding can push |dot| a hair past 1
    return float(np.clip(np.dot(unit_a.vector, unit_b.vector), -1.0, 1.0))


def exponential_score(a: Any, b: Any) -> float:
    """exp(-euclidean distance), in (0, 1]."""
    a, b = as_descriptor(a), as_descriptor(b)
    _check_shapes(a, b)
    return math.exp(-float(np.linalg.norm(a - b)))


def score(a: Any, b: Any, policy: ScoringPolicy = ScoringPolicy.EXPONENTIAL) -> float:
    """Score two descriptors under the given policy."""
    policy = ScoringPolicy(policy)
    if policy == ScoringPolicy.COSINE:
        return cosine_score(a, b)
    return exponential_score(a, b)


def select_query_descriptor(query: Any) -> np.ndarray:
    """
    Reduce a query to exactly one descriptor.

    Accepts a single descriptor, a list of descriptors, or a list of
    DetectedFace. Faces are chosen by highest detection confidence (first
    face wins ties); plain descriptors by position. Matching several query
    faces at once is not supported.

    Raises:
        DescriptorShapeError: the query holds no descriptor
    """
    if isinstance(query, DetectedFace):
        return as_descriptor(query.encoding)

    if isinstance(query, np.ndarray):
        if query.ndim == 2:
            if query.shape[0] == 0:
                raise DescriptorShapeError("Query contains no descriptors")
            return as_descriptor(query[0])
        return as_descriptor(query)

    items = list(query)
    if not items:
        raise DescriptorShapeError("Query contains no descriptors")

    if all(isinstance(item, DetectedFace) for item in items):
        if len(items) > 1:
            logger.info("Query image has %d faces; using the most confident one", len(items))
        best = max(items, key=lambda face: face.confidence)
        return as_descriptor(best.encoding)

    if all(isinstance(item, (int, float, np.floating, np.integer)) for item in items):
        return as_descriptor(items)

    if len(items) > 1:
        logger.info("Query has %d descriptors; using the first one", len(items))
    return as_descriptor(items[0])


# ============================================================================
# Matching models
# ============================================================================

class CandidateItem(BaseModel):
    """One stored photo and the descriptors of every face found in it."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    item_id: str
    descriptors: List[np.ndarray] = Field(..., min_length=1)
    confidences: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("descriptors", mode="before")
    @classmethod
    def _coerce_descriptors(cls, value):
        return [as_descriptor(descriptor) for descriptor in value]

    @classmethod
    def from_faces(
        cls,
        item_id: str,
        faces: Sequence[DetectedFace],
        metadata: Optional[Dict[str, Any]] = None
    ) -> "CandidateItem":
        return cls(
            item_id=item_id,
            descriptors=[face.encoding for face in faces],
            confidences=[face.confidence for face in faces],
            metadata=dict(metadata or {}),
        )

    def confidence_at(self, index: int) -> Optional[float]:
        if self.confidences is None or index >= len(self.confidences):
            return None
        return self.confidences[index]


class ScoredMatch(BaseModel):
    """A candidate that passed the threshold."""
    item_id: str
    score: float
    descriptor_index: int = 0
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def similarity_percent(self) -> float:
        """Score on the 0-100 scale shown to clients."""
        return round(self.score * 100, 2)


class MatchResult(BaseModel):
    """Ordered matches plus the threshold that produced them."""
    matches: List[ScoredMatch] = Field(default_factory=list)
    threshold: float
    strategy: SelectionStrategy
    policy: ScoringPolicy
    candidates_scored: int = 0

    @property
    def item_ids(self) -> List[str]:
        return [match.item_id for match in self.matches]

    def __len__(self) -> int:
        return len(self.matches)


DEFAULT_THRESHOLDS = {
    ScoringPolicy.COSINE: config.COSINE_FIXED_THRESHOLD,
    ScoringPolicy.EXPONENTIAL: config.EXPONENTIAL_FIXED_THRESHOLD,
}


class MatcherConfig(BaseModel):
    """Deployment-level matching settings."""
    policy: ScoringPolicy = ScoringPolicy(config.SCORING_POLICY)
    strategy: SelectionStrategy = SelectionStrategy(config.MATCH_STRATEGY)
    threshold: Optional[float] = Field(
        None,
        description="Fixed threshold for first_hit (uses policy default if not set)"
    )
    floor: float = Field(config.ADAPTIVE_FLOOR, description="Lowest adaptive threshold")
    sigma_multiplier: float = Field(config.ADAPTIVE_SIGMA_MULTIPLIER, ge=0.0)
    max_results: int = Field(config.MAX_MATCH_RESULTS, ge=1)

    @property
    def fixed_threshold(self) -> float:
        if self.threshold is not None:
            return self.threshold
        return DEFAULT_THRESHOLDS[self.policy]


# ============================================================================
# Matcher
# ============================================================================

class SimilarityMatcher:
    """
    Core matching engine.

    Pure and stateless apart from its configuration, so one instance can be
    shared across requests.
    """

    def __init__(self, matcher_config: Optional[MatcherConfig] = None):
        self.config = matcher_config or MatcherConfig()

    @property
    def policy(self) -> ScoringPolicy:
        return self.config.policy

    def _prepare(self, descriptor: np.ndarray) -> NormalizedDescriptor:
        # cosine works on unit vectors; exponential on raw ones
        unit = normalize(descriptor)
        if self.policy == ScoringPolicy.COSINE:
            return NormalizedDescriptor(unit.vector, unit.degenerate)
        return NormalizedDescriptor(as_descriptor(descriptor), unit.degenerate)

    def _score_prepared(self, query: NormalizedDescriptor, candidate: NormalizedDescriptor) -> float:
        _check_shapes(query.vector, candidate.vector)
        if self.policy == ScoringPolicy.COSINE:
            return float(np.clip(np.dot(query.vector, candidate.vector), -1.0, 1.0))
        return math.exp(-float(np.linalg.norm(query.vector - candidate.vector)))

    def score(self, a: Any, b: Any) -> float:
        return score(a, b, self.policy)

    def adaptive_threshold(self, scores: Sequence[float]) -> float:
        """
        max(floor, mean - k * std) with population std.

        Fewer than two scores, or scores with no spread, fall back to the
        floor.
        """
        floor = self.config.floor
        if len(scores) < 2:
            return floor
        values = np.asarray(scores, dtype=np.float64)
        mean = float(np.mean(values))
        std = float(np.std(values))
        if np.isclose(std, 0.0):
            return floor
        return max(floor, mean - self.config.sigma_multiplier * std)

    def match(
        self,
        query: Union[Any, Sequence[Any]],
        candidates: Sequence[CandidateItem],
        strategy: Optional[SelectionStrategy] = None
    ) -> MatchResult:
        """
        Rank candidates against the query.

        Args:
            query: one descriptor, several descriptors, or detected faces
            candidates: the complete candidate list for this request
            strategy: override the configured selection strategy

        Raises:
            EmptyCandidateSetError: no candidates at all
            DescriptorShapeError: query and candidate lengths differ
        """
        strategy = SelectionStrategy(strategy or self.config.strategy)
        if not candidates:
            raise EmptyCandidateSetError("No candidates to match against")

        query_vector = self._prepare(select_query_descriptor(query))
        for item in candidates:
            for descriptor in item.descriptors:
                _check_shapes(query_vector.vector, descriptor)

        if query_vector.degenerate:
            logger.warning("Query descriptor has zero magnitude; nothing can match")
            threshold = (
                self.config.fixed_threshold
                if strategy == SelectionStrategy.FIRST_HIT
                else self.config.floor
            )
            return MatchResult(threshold=threshold, strategy=strategy, policy=self.policy)

        if strategy == SelectionStrategy.FIRST_HIT:
            return self._match_first_hit(query_vector, candidates)
        return self._match_adaptive(query_vector, candidates)

    def _match_first_hit(self, query: NormalizedDescriptor, candidates: Sequence[CandidateItem]) -> MatchResult:
        threshold = self.config.fixed_threshold
        matches = []
        scored = 0

        for item in candidates:
            for index, descriptor in enumerate(item.descriptors):
                prepared = self._prepare(descriptor)
                if prepared.degenerate:
                    logger.debug("Skipping zero-magnitude descriptor %d of %s", index, item.item_id)
                    continue

                value = self._score_prepared(query, prepared)
                scored += 1
                if value > threshold:
                    matches.append(ScoredMatch(
                        item_id=item.item_id,
                        score=value,
                        descriptor_index=index,
                        confidence=item.confidence_at(index),
                        metadata=item.metadata,
                    ))
                    # one record per item
                    break

        logger.info(
            "first_hit: %d/%d items matched (threshold=%.4f, policy=%s)",
            len(matches), len(candidates), threshold, self.policy.value
        )
        return MatchResult(
            matches=matches,
            threshold=threshold,
            strategy=SelectionStrategy.FIRST_HIT,
            policy=self.policy,
            candidates_scored=scored,
        )

    def _match_adaptive(self, query: NormalizedDescriptor, candidates: Sequence[CandidateItem]) -> MatchResult:
        best: List[ScoredMatch] = []

        for item in candidates:
            best_index = None
            best_score = -math.inf
            for index, descriptor in enumerate(item.descriptors):
                prepared = self._prepare(descriptor)
                if prepared.degenerate:
                    continue
                value = self._score_prepared(query, prepared)
                if value > best_score:
                    best_score = value
                    best_index = index

            if best_index is None:
                logger.debug("Item %s has no usable descriptor", item.item_id)
                continue

            best.append(ScoredMatch(
                item_id=item.item_id,
                score=best_score,
                descriptor_index=best_index,
                confidence=item.confidence_at(best_index),
                metadata=item.metadata,
            ))

        threshold = self.adaptive_threshold([match.score for match in best])
        accepted = [match for match in best if match.score > threshold]
        # stable sort: equal scores keep input order
        accepted.sort(key=lambda match: match.score, reverse=True)
        accepted = accepted[:self.config.max_results]

        logger.info(
            "adaptive_top_k: %d/%d items accepted (threshold=%.4f, policy=%s)",
            len(accepted), len(best), threshold, self.policy.value
        )
        return MatchResult(
            matches=accepted,
            threshold=threshold,
            strategy=SelectionStrategy.ADAPTIVE_TOP_K,
            policy=self.policy,
            candidates_scored=len(best),
        )
