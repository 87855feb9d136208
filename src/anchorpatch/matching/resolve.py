from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

import structlog

from anchorpatch.matching.matcher import MatchCandidate
from anchorpatch.models import EngineConfig

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Unique:
    candidate: MatchCandidate


@dataclass(frozen=True)
class Ambiguous:
    candidates: List[MatchCandidate]


@dataclass(frozen=True)
class NotFound:
    suggestions: List[str] = field(default_factory=list)
    # Best candidate that did not clear the acceptance threshold, if any
    near_miss: Optional[MatchCandidate] = None


MatchResult = Union[Unique, Ambiguous, NotFound]


def resolve(candidates: Sequence[MatchCandidate], config: Optional[EngineConfig] = None) -> MatchResult:
    """
    Turns the matcher's candidate list into Unique, Ambiguous or NotFound.

    Every candidate whose confidence lies within `tie_margin` of the best one
    is a tie; two or more ties are never resolved by picking the first.
    Suggestions for NotFound are filled in later by the suggestion engine.
    """
    config = config or EngineConfig()
    if not candidates:
        return NotFound()

    ranked = sorted(candidates, key=lambda c: (-c.confidence, c.anchor))
    top = ranked[0]

    tied = [c for c in ranked if top.confidence - c.confidence <= config.tie_margin]
    if len(tied) > 1:
        logger.info(f"Ambiguous match: {len(tied)} candidates within {config.tie_margin} of {top.confidence:.3f}")
        return Ambiguous(candidates=tied)

    if top.confidence < config.acceptance_threshold:
        return NotFound(near_miss=top)

    return Unique(candidate=top)
