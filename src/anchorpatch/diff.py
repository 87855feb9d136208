from typing import List, Sequence, Tuple

import structlog
from diff_match_patch import diff_match_patch

logger = structlog.get_logger(__name__)

_PREFIX = {0: " ", -1: "-", 1: "+"}


def line_diff(original: Sequence[str], modified: Sequence[str]) -> List[Tuple[int, str]]:
    """
    Line-level diff of two line sequences.
    Returns (op, line) rows where op is 0 (equal), -1 (removed) or 1 (added).
    """
    dmp = diff_match_patch()

    # 1. Encode each distinct line as a single character so DMP diffs whole lines
    text1 = "".join(f"{line}\n" for line in original)
    text2 = "".join(f"{line}\n" for line in modified)
    chars1, chars2, line_array = dmp.diff_linesToChars(text1, text2)

    # 2. Diff in line space, then decode back to text
    diffs = dmp.diff_main(chars1, chars2, False)
    dmp.diff_charsToLines(diffs, line_array)

    rows: List[Tuple[int, str]] = []
    for op, text in diffs:
        # Every encoded line ends with "\n", so the final split item is empty
        for line in text.split("\n")[:-1]:
            rows.append((op, line))
    return rows


def preview_diff(original: Sequence[str], modified: Sequence[str], context: int = 2) -> str:
    """
    Compact unified-style preview of an edit, with `context` unchanged lines
    around each change and an "@@ line N @@" header per hunk (N is 1-based in
    the original document).
    """
    rows = line_diff(original, modified)
    changed = [i for i, (op, _) in enumerate(rows) if op != 0]
    if not changed:
        return ""

    keep = set()
    for i in changed:
        keep.update(range(i - context, i + context + 1))

    output: List[str] = []
    original_line = 0
    previous_kept = False
    for i, (op, line) in enumerate(rows):
        if i in keep:
            if not previous_kept:
                output.append(f"@@ line {original_line + 1} @@")
            output.append(f"{_PREFIX[op]} {line}")
            previous_kept = True
        else:
            previous_kept = False
        if op != 1:
            original_line += 1

    return "\n".join(output)
