"""IR comments that echo assembler source lines."""

from __future__ import annotations


def ir_source_comment(raw: str) -> str:
    """Render ``raw`` source text as IR comment lines (``  ; s: ...``).

    Tabs become spaces, each line is trimmed and blank lines are dropped.
    Returns an empty string when nothing remains.
    """
    lines = (line.replace("\t", " ").strip() for line in raw.strip().split("\n"))
    return "".join(f"  ; s: {line}\n" for line in lines if line)