"""
Document and section model.

A Document is an immutable sequence of lines parsed from raw text, together
with the terminator each line ended with, so it renders back byte for byte, and a content
fingerprint used for change detection. Sections are derived from markdown
ATX headings and are used to scope context searches.
"""
import hashlib
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from anchorpatch.utils.text import detect_newline, split_with_endings

_HEADING_RE = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?(?:[ \t]+#+)?[ \t]*$")
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")


def fingerprint(text: str) -> str:
    """SHA-256 hex digest of the raw text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def parse_heading(line: str) -> Optional[Tuple[int, str]]:
    """Returns (level, title) if the line is an ATX heading."""
    match = _HEADING_RE.match(line)
    if not match:
        return None
    hashes, title = match.groups()
    return len(hashes), (title or "").strip()


@dataclass
class Section:
    title: str
    level: int
    start: int
    end: int
    parent: Optional["Section"] = field(default=None, repr=False, compare=False)
    children: List["Section"] = field(default_factory=list, repr=False, compare=False)

    def contains(self, index: int) -> bool:
        return self.start <= index < self.end


def _build_sections(lines: Sequence[str]) -> Tuple[List[Section], List[Section]]:
    """
    Builds the heading tree.
    Returns (all sections in document order, top-level sections).
    """
    ordered: List[Section] = []
    roots: List[Section] = []
    stack: List[Section] = []
    fence: Optional[str] = None

    for i, line in enumerate(lines):
        # 1. Fenced code blocks never contain headings
        fence_match = _FENCE_RE.match(line)
        if fence_match:
            marker = fence_match.group(1)
            if fence is None:
                fence = marker[0] * 3
            elif marker.startswith(fence):
                fence = None
            continue
        if fence is not None:
            continue

        heading = parse_heading(line)
        if heading is None:
            continue
        level, title = heading

        # 2. Close every open section of equal or deeper level
        while stack and stack[-1].level >= level:
            stack.pop().end = i

        section = Section(title=title, level=level, start=i, end=len(lines))
        if stack:
            section.parent = stack[-1]
            stack[-1].children.append(section)
        else:
            roots.append(section)
        stack.append(section)
        ordered.append(section)

    return ordered, roots


@dataclass(frozen=True)
class Document:
    lines: Tuple[str, ...]
    # Terminator each line ended with; "" for a last line without one
    endings: Tuple[str, ...] = ()
    # Convention for line breaks the document has to gain, taken from its first terminator
    newline: str = "\n"
    fingerprint: str = ""
    sections: Tuple[Section, ...] = field(default=(), repr=False, compare=False)
    roots: Tuple[Section, ...] = field(default=(), repr=False, compare=False)

    def __len__(self) -> int:
        return len(self.lines)

    @property
    def ends_with_newline(self) -> bool:
        return bool(self.endings) and self.endings[-1] != ""

    def render(self) -> str:
        return _render(self.lines, self.endings)

    def with_lines(self, lines: Iterable[str], endings: Optional[Iterable[str]] = None) -> "Document":
        """
        Builds a new Document from edited lines.

        `endings` runs parallel to `lines`. Without it, every line gets the
        document's newline and the last line keeps the current trailing state.
        Any line but the last that ends up without a terminator gets the
        document's newline, so lines are never joined.
        """
        lines = tuple(lines)
        if endings is None:
            last = self.endings[-1] if self.endings else ""
            endings = [self.newline] * (len(lines) - 1) + [last] if lines else []
        endings = list(endings)
        if len(endings) != len(lines):
            raise ValueError(f"Got {len(endings)} line endings for {len(lines)} lines")
        for i in range(len(endings) - 1):
            if not endings[i]:
                endings[i] = self.newline

        ordered, roots = _build_sections(lines)
        return Document(
            lines=lines,
            endings=tuple(endings),
            newline=self.newline,
            fingerprint=fingerprint(_render(lines, endings)),
            sections=tuple(ordered),
            roots=tuple(roots),
        )

    def find_section(self, title: str) -> Optional[Section]:
        """
        Finds a section by exact, case-sensitive heading text.

        `title` may be bare text ("Tasks") or written as a heading ("## Tasks"),
        in which case the level must match too. The first occurrence wins when
        several headings share the same text.
        """
        wanted = title.strip()
        as_heading = parse_heading(wanted)
        for section in self.sections:
            if as_heading is not None:
                level, text = as_heading
                if section.level == level and section.title == text:
                    return section
            elif section.title == wanted:
                return section
        return None

    def scope(self, section: Optional[Section] = None) -> Tuple[int, int]:
        if section is None:
            return 0, len(self.lines)
        return section.start, section.end

    def section_at(self, index: int) -> Optional[Section]:
        """Innermost section containing the given line index."""
        found = None
        for section in self.sections:
            if section.contains(index):
                found = section
            elif section.start > index:
                break
        return found

    def headings(self) -> List[str]:
        return [f"{'#' * s.level} {s.title}" for s in self.sections]


def _render(lines: Sequence[str], endings: Sequence[str]) -> str:
    return "".join(line + ending for line, ending in zip(lines, endings))


def parse(text: str) -> Document:
    """Parses raw text into a Document, keeping every line's own terminator."""
    lines, endings = split_with_endings(text)
    ordered, roots = _build_sections(lines)
    return Document(
        lines=tuple(lines),
        endings=tuple(endings),
        newline=detect_newline(text),
        fingerprint=fingerprint(text),
        sections=tuple(ordered),
        roots=tuple(roots),
    )
