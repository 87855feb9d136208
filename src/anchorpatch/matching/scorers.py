"""
Similarity tiers for the context matcher.

Each tier is a Scorer: an interchangeable strategy that compares one context
line against one document line and returns a similarity in [0, 1]. The
matcher averages these per-line scores over a window and accepts the window
when the average clears the tier threshold. Tiers are tried in order, from
literal equality to the most tolerant fuzzy comparison.
"""
from typing import List, Sequence

from rapidfuzz import fuzz
from rapidfuzz.distance import OSA, Levenshtein

from anchorpatch.models import EngineConfig
from anchorpatch.utils.text import normalize_line


class Scorer:
    name = "base"
    # Exact compares raw lines; every other tier works on the non-blank projection
    uses_projection = True
    threshold = 1.0
    # Multiplier turning a raw score into a reported confidence
    weight = 1.0

    def __init__(self, ignore_case: bool = False):
        self.ignore_case = ignore_case

    def prepare(self, line: str) -> str:
        if not self.uses_projection:
            return line
        return normalize_line(line, self.ignore_case)

    def line_score(self, context_line: str, document_line: str) -> float:
        raise NotImplementedError

    def score(self, window: Sequence[str], context: Sequence[str]) -> float:
        """Mean per-line similarity of two equally long, already prepared line sequences."""
        if len(window) != len(context) or not context:
            return 0.0
        total = sum(self.line_score(c, w) for c, w in zip(context, window))
        return total / len(context)


class ExactScorer(Scorer):
    name = "exact"
    uses_projection = False

    def line_score(self, context_line: str, document_line: str) -> float:
        return 1.0 if context_line == document_line else 0.0


class NormalizedScorer(Scorer):
    name = "normalized"

    def line_score(self, context_line: str, document_line: str) -> float:
        return 1.0 if context_line == document_line else 0.0


class RatioScorer(Scorer):
    name = "ratio"

    def __init__(self, threshold: float = 0.85, ignore_case: bool = False):
        super().__init__(ignore_case)
        self.threshold = threshold

    def line_score(self, context_line: str, document_line: str) -> float:
        return Levenshtein.normalized_similarity(context_line, document_line)


class TokenScorer(Scorer):
    """
    Word order tolerant: tokens are sorted before comparing, so reordered lines
    score high. A context holding only some of a line's words does not.
    Punctuation and case are kept (case folds only with ignore_case), so a bare
    title never matches its markdown heading here.
    """

    name = "token"
    weight = 0.95

    def __init__(self, threshold: float = 0.90, ignore_case: bool = False):
        super().__init__(ignore_case)
        self.threshold = threshold

    def line_score(self, context_line: str, document_line: str) -> float:
        if context_line == document_line:
            return 1.0
        return fuzz.token_sort_ratio(context_line, document_line) / 100.0


class TranspositionScorer(Scorer):
    """Optimal string alignment: adjacent swaps cost one edit. Short lines only."""

    name = "transposition"
    weight = 0.9

    def __init__(self, threshold: float = 0.85, max_length: int = 120, ignore_case: bool = False):
        super().__init__(ignore_case)
        self.threshold = threshold
        self.max_length = max_length

    def line_score(self, context_line: str, document_line: str) -> float:
        if context_line == document_line:
            return 1.0
        if max(len(context_line), len(document_line)) > self.max_length:
            return 0.0
        return OSA.normalized_similarity(context_line, document_line)


def default_tiers(config: EngineConfig) -> List[Scorer]:
    """The cascade, in the order it is tried."""
    return [
        ExactScorer(),
        NormalizedScorer(ignore_case=config.ignore_case),
        RatioScorer(config.ratio_threshold, ignore_case=config.ignore_case),
        TokenScorer(config.token_threshold, ignore_case=config.ignore_case),
        TranspositionScorer(
            config.transposition_threshold,
            max_length=config.max_transposition_length,
            ignore_case=config.ignore_case,
        ),
    ]
