import sys
from typing import Iterable, List, Optional, Sequence, TextIO

from cdtool.models import JobRow

COLUMN_PADDING = 3

SUMMARY_HEADER = ("name", "failed", "success", "completion time")
DETAIL_HEADER = ("name", "src", "tag", "succeed", "finish time")


def _fmt(value) -> str:
    # matches the lowercase booleans the kubectl-style tables use
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def render_table(header: Sequence[str], rows: Iterable[Sequence], out: Optional[TextIO] = None) -> None:
    out = out or sys.stdout
    lines: List[List[str]] = [list(header)] + [[_fmt(cell) for cell in row] for row in rows]
    widths = [max(len(line[i]) for line in lines) for i in range(len(header))]
    for line in lines:
        cells = [cell.ljust(widths[i] + COLUMN_PADDING) for i, cell in enumerate(line[:-1])]
        out.write("".join(cells) + line[-1] + "\n")


def summary_rows(rows: Iterable[JobRow]) -> List[tuple]:
    return [(row.qualified_name, row.failed, row.succeeded, row.completion_label) for row in rows]


def detail_rows(rows: Iterable[JobRow]) -> List[tuple]:
    return [
        (row.qualified_name, row.source, row.tag, row.succeeded, row.completion_label)
        for row in rows
    ]
