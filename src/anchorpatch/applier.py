from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Set

import structlog

from anchorpatch.document import Document
from anchorpatch.matching.matcher import MatchCandidate
from anchorpatch.models import ContextPatch, PatchOperation
from anchorpatch.utils.text import content_lines

logger = structlog.get_logger(__name__)


class PatchState(str, Enum):
    RESOLVING = "resolving"
    UNIQUE = "unique"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


_TRANSITIONS: Dict[PatchState, Set[PatchState]] = {
    PatchState.RESOLVING: {PatchState.UNIQUE, PatchState.AMBIGUOUS, PatchState.NOT_FOUND, PatchState.FAILED},
    PatchState.UNIQUE: {PatchState.APPLYING, PatchState.FAILED},
    PatchState.AMBIGUOUS: {PatchState.FAILED},
    PatchState.NOT_FOUND: {PatchState.FAILED},
    PatchState.APPLYING: {PatchState.APPLIED, PatchState.FAILED},
    PatchState.APPLIED: {PatchState.ROLLED_BACK},
    PatchState.FAILED: set(),
    PatchState.ROLLED_BACK: set(),
}


class PatchTransaction:
    """Tracks one patch through resolving, applying and an optional rollback."""

    def __init__(self, label: str = ""):
        self.label = label
        self.state = PatchState.RESOLVING
        self.history: List[PatchState] = [PatchState.RESOLVING]

    def advance(self, state: PatchState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal patch transition {self.state.value} -> {state.value} ({self.label})")
        self.state = state
        self.history.append(state)

    @property
    def terminal(self) -> bool:
        return self.state in (PatchState.APPLIED, PatchState.FAILED, PatchState.ROLLED_BACK)


@dataclass(frozen=True)
class AppliedEdit:
    document: Document
    anchor: int
    # Lines of the new document that hold the patch content, [start, end)
    changed_start: int
    changed_end: int
    lines_modified: int


def _inserted_ending(document: Document, position: int) -> str:
    """Ending for a line inserted at `position`: the previous line's, else the next line's."""
    endings = document.endings
    if position > 0 and endings[position - 1]:
        return endings[position - 1]
    if position < len(endings) and endings[position]:
        return endings[position]
    return document.newline


def apply_to_document(document: Document, patch: ContextPatch, candidate: MatchCandidate) -> AppliedEdit:
    """
    Computes the edited document for a uniquely resolved patch.

    Insert places the content at the insertion point and leaves every
    existing line untouched. Replace swaps the anchor line for the content,
    which may span several lines. Delete removes the anchor line.

    Untouched lines keep their own terminator. Replacement lines take the
    terminator of the line they replace and inserted lines that of their
    neighbour. The final line keeps whether the document ended with a break.
    """
    lines = list(document.lines)
    endings = list(document.endings)
    position = candidate.anchor
    operation = patch.op

    if operation == PatchOperation.INSERT:
        new_lines = content_lines(patch.content)
        ending = _inserted_ending(document, position)
        result = lines[:position] + new_lines + lines[position:]
        result_endings = endings[:position] + [ending] * len(new_lines) + endings[position:]
        if new_lines and lines and position == len(lines):
            # Appending: the old last line gains a break, the new last line inherits its state
            result_endings[position - 1] = ending
            result_endings[-1] = endings[-1]
        changed = len(new_lines)
        modified = len(new_lines)
    else:
        if operation == PatchOperation.REPLACE:
            new_lines = content_lines(patch.content)
            logger.debug(f"Replacing line {position + 1}: '{lines[position][:40]}'")
        else:
            new_lines = []
            logger.debug(f"Deleting line {position + 1}: '{lines[position][:40]}'")
        result = lines[:position] + new_lines + lines[position + 1 :]
        result_endings = endings[:position] + [endings[position]] * len(new_lines) + endings[position + 1 :]
        if not new_lines and result and position == len(lines) - 1:
            # The last line went away, so the new last line takes over its trailing state
            result_endings[-1] = endings[position]
        changed = len(new_lines)
        modified = max(1, len(new_lines))

    return AppliedEdit(
        document=document.with_lines(result, result_endings),
        anchor=position,
        changed_start=position,
        changed_end=position + changed,
        lines_modified=modified,
    )
