import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from anchorpatch.document import Document
from anchorpatch.errors import MatchTimeout
from anchorpatch.matching.scorers import Scorer, default_tiers
from anchorpatch.models import EngineConfig, PatchOperation
from anchorpatch.utils.text import is_blank

logger = structlog.get_logger(__name__)

# Float noise guard when comparing averaged scores against thresholds
_EPSILON = 1e-9
# How many windows are scanned between deadline checks
_DEADLINE_STRIDE = 256


@dataclass(frozen=True)
class MatchCandidate:
    """A possible anchor for a patch, with the tier that found it."""

    anchor: int
    tier: str
    confidence: float
    before_span: Optional[Tuple[int, int]] = None
    after_span: Optional[Tuple[int, int]] = None

    @property
    def region(self) -> Tuple[int, int]:
        """Document lines covered by the matched context, [start, end)."""
        spans = [s for s in (self.before_span, self.after_span) if s is not None]
        return min(s[0] for s in spans), max(s[1] for s in spans)


class ContextMatcher:
    """
    Locates the anchor for a before/after context pair.

    Tiers are tried in order and the first tier producing at least one window
    above its threshold wins. Before- and after-context are scanned as one
    contiguous window so that they are only paired where the gap between them
    is consistent with the edit: directly adjacent for the exact tier, and
    separated by nothing but blank lines for the blank-insensitive tiers.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        tiers: Optional[List[Scorer]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or EngineConfig()
        self.tiers = tiers if tiers is not None else default_tiers(self.config)
        self.clock = clock

    def find_candidates(
        self,
        document: Document,
        before_context: Sequence[str],
        after_context: Sequence[str],
        operation: PatchOperation,
        scope: Optional[Tuple[int, int]] = None,
    ) -> List[MatchCandidate]:
        start, end = scope if scope is not None else document.scope()
        deadline = self.clock() + self.config.match_timeout_seconds

        for scorer in self.tiers:
            candidates = self._scan(document, scorer, before_context, after_context, operation, start, end, deadline)
            if candidates:
                logger.debug(f"Tier '{scorer.name}' produced {len(candidates)} candidate(s) in [{start}:{end}]")
                return candidates
            logger.debug(f"Tier '{scorer.name}' found nothing in [{start}:{end}]")
        return []

    def _scan(
        self,
        document: Document,
        scorer: Scorer,
        before_context: Sequence[str],
        after_context: Sequence[str],
        operation: PatchOperation,
        start: int,
        end: int,
        deadline: float,
    ) -> List[MatchCandidate]:
        lines = document.lines

        # 1. Build the tier's view of the document and of the context
        if scorer.uses_projection:
            indices = [i for i in range(start, end) if not is_blank(lines[i])]
            view = [scorer.prepare(lines[i]) for i in indices]
            before = [scorer.prepare(line) for line in before_context if not is_blank(line)]
            after = [scorer.prepare(line) for line in after_context if not is_blank(line)]
            # A side made only of blank lines has nothing to match here
            if (before_context and not before) or (after_context and not after):
                return []
        else:
            indices = list(range(start, end))
            view = [lines[i] for i in indices]
            before = list(before_context)
            after = list(after_context)

        context = before + after
        width = len(context)
        n_windows = len(view) - width + 1
        if width == 0 or n_windows <= 0:
            return []

        # 2. Fuzzy tiers are bounded up front
        if scorer.uses_projection and len(view) * width > self.config.max_comparisons:
            raise MatchTimeout(
                f"Matching {len(view)} lines against {width} context lines exceeds the "
                f"limit of {self.config.max_comparisons} comparisons",
                ["Add section_context to narrow the search"],
            )

        n_before = len(before)
        found: Dict[int, MatchCandidate] = {}

        # 3. Slide the window
        for k in range(n_windows):
            if k % _DEADLINE_STRIDE == 0 and self.clock() > deadline:
                raise MatchTimeout(
                    f"Matching exceeded {self.config.match_timeout_seconds}s in tier '{scorer.name}'",
                    ["Add section_context to narrow the search", "Provide more exact context lines"],
                )

            raw = scorer.score(view[k : k + width], context)
            if raw + _EPSILON < scorer.threshold:
                continue

            before_span = (indices[k], indices[k + n_before - 1] + 1) if n_before else None
            after_span = (indices[k + n_before], indices[k + width - 1] + 1) if after else None
            anchor = _anchor_for(operation, before_span, after_span)

            candidate = MatchCandidate(
                anchor=anchor,
                tier=scorer.name,
                confidence=round(min(1.0, raw) * scorer.weight, 6),
                before_span=before_span,
                after_span=after_span,
            )
            existing = found.get(anchor)
            if existing is None or candidate.confidence > existing.confidence:
                found[anchor] = candidate

        return sorted(found.values(), key=lambda c: (-c.confidence, c.anchor))


def _anchor_for(
    operation: PatchOperation,
    before_span: Optional[Tuple[int, int]],
    after_span: Optional[Tuple[int, int]],
) -> int:
    """
    Insert anchors are insertion points: the first line of the after-match, or
    just past the before-match when there is no after-context.
    Replace/Delete anchors are the targeted line: the last line of the
    before-match, or the first line of the after-match when before is empty.
    """
    if operation == PatchOperation.INSERT:
        if after_span is not None:
            return after_span[0]
        return before_span[1]
    if before_span is not None:
        return before_span[1] - 1
    return after_span[0]
