from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from anchorpatch.document import Document, Section
from anchorpatch.errors import MatchTimeout
from anchorpatch.matching.matcher import ContextMatcher, MatchCandidate
from anchorpatch.matching.scorers import RatioScorer
from anchorpatch.models import EngineConfig, PatchOperation

logger = structlog.get_logger(__name__)

_MAX_LISTED_HEADINGS = 20


def _heading(section: Section) -> str:
    return f"{'#' * section.level} {section.title}"


def excerpt(document: Document, start: int, end: int, radius: int = 2, marker: str = ">") -> str:
    """
    Renders lines [start-radius, end+radius) with 1-based line numbers.
    Lines inside [start, end) are flagged with `marker`.
    """
    lo = max(0, start - radius)
    hi = min(len(document.lines), max(end, start) + radius)
    rows = []
    for i in range(lo, hi):
        flag = marker if start <= i < end else " "
        rows.append(f"{flag}{i + 1:>5} | {document.lines[i]}")
    return "\n".join(rows)


class SuggestionEngine:
    """
    Best-effort guidance for failed resolutions.
    Runs only on failure, so it may afford a wider, unscoped, low-threshold pass.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.matcher = ContextMatcher(
            self.config,
            tiers=[RatioScorer(self.config.suggestion_threshold, ignore_case=self.config.ignore_case)],
        )

    def closest_window(
        self, document: Document, before_context: Sequence[str], after_context: Sequence[str]
    ) -> Optional[MatchCandidate]:
        try:
            candidates = self.matcher.find_candidates(
                document, before_context, after_context, PatchOperation.REPLACE
            )
        except MatchTimeout:
            logger.warning("Suggestion pass exceeded its bound; returning generic hints only")
            return None
        return candidates[0] if candidates else None

    def for_missing_section(self, document: Document, section_context: str) -> List[str]:
        headings = document.headings()
        hints = [f"Section '{section_context}' not found"]
        if headings:
            listed = ", ".join(f"'{h}'" for h in headings[:_MAX_LISTED_HEADINGS])
            more = " ..." if len(headings) > _MAX_LISTED_HEADINGS else ""
            hints.append(f"Available sections: {listed}{more}")
        else:
            hints.append("The document has no headings; omit section_context")
        return hints

    def for_not_found(
        self,
        document: Document,
        before_context: Sequence[str],
        after_context: Sequence[str],
        section: Optional[Section] = None,
        section_context: Optional[str] = None,
    ) -> List[str]:
        hints: List[str] = []

        closest = self.closest_window(document, before_context, after_context)
        if closest is not None:
            start, end = closest.region
            where = f"Closest match is at line {start + 1} (similarity {closest.confidence:.2f})"
            if section is not None and not section.contains(start):
                distance = section.start - start if start < section.start else start - section.end + 1
                where += f", {distance} line(s) outside section '{_heading(section)}'"
            hints.append(f"{where}; add section_context or more context")
            hints.append("Document lines there:\n" + excerpt(document, start, end, radius=0))

        hints.append("Check if content has changed since last load")
        if section_context:
            hints.append("Verify section header exists and is spelled correctly")
        else:
            hints.append("Consider adding section_context to disambiguate")
        if len(before_context) + len(after_context) < 3:
            hints.append("Consider providing more context lines (3-5 recommended)")
        return hints

    def for_ambiguous(
        self, document: Document, candidates: Sequence[MatchCandidate]
    ) -> Tuple[List[Dict[str, Any]], List[str]]:
        described: List[Dict[str, Any]] = []
        hints: List[str] = []
        seen_sections = set()

        for candidate in candidates:
            start, end = candidate.region
            section = document.section_at(candidate.anchor if candidate.anchor < len(document) else start)
            heading = _heading(section) if section is not None else None
            described.append(
                {
                    "line": candidate.anchor + 1,
                    "tier": candidate.tier,
                    "confidence": candidate.confidence,
                    "section": heading,
                    "excerpt": excerpt(document, start, end, radius=self.config.excerpt_radius),
                }
            )
            if heading and heading not in seen_sections:
                seen_sections.add(heading)
                hints.append(f"Add section_context='{heading}' to target the match at line {candidate.anchor + 1}")

        if len(seen_sections) < len(candidates):
            hints.append("Add more before_context/after_context lines so the location is unique")
        return described, hints
