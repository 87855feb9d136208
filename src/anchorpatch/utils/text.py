"""
Line-level text helpers shared by the document model, the matcher and the applier.
"""
import re
from typing import List, Tuple

_NEWLINE_RE = re.compile(r"\r\n|\r|\n")


def detect_newline(text: str) -> str:
    """Returns the first line terminator found in text, defaulting to LF."""
    match = _NEWLINE_RE.search(text)
    return match.group(0) if match else "\n"


def split_with_endings(text: str) -> Tuple[List[str], List[str]]:
    """
    Splits text into lines and the terminator each line ended with.
    The last line's ending is "" when the text has no trailing terminator.
    Mixed conventions are kept as they are.
    """
    lines: List[str] = []
    endings: List[str] = []
    pos = 0
    for match in _NEWLINE_RE.finditer(text):
        lines.append(text[pos : match.start()])
        endings.append(match.group(0))
        pos = match.end()
    if pos < len(text):
        lines.append(text[pos:])
        endings.append("")
    return lines, endings


def split_lines(text: str) -> Tuple[List[str], bool]:
    """
    Splits text on any line terminator.
    Returns (lines, ends_with_newline). A trailing terminator does not produce
    an extra empty line, so "a\\nb\\n" and "a\\nb" both yield ["a", "b"].
    """
    lines, endings = split_with_endings(text)
    return lines, bool(endings) and endings[-1] != ""


def content_lines(content: str) -> List[str]:
    """Splits patch content into the lines it contributes to a document."""
    lines, _ = split_lines(content)
    return lines


def is_blank(line: str) -> bool:
    return not line.strip()


def normalize_line(line: str, ignore_case: bool = False) -> str:
    """Trims a line and collapses inner whitespace runs to a single space."""
    result = " ".join(line.split())
    if ignore_case:
        result = result.casefold()
    return result
