"""Pure match-finding helpers.

Every scan returns an owned list of spans; there is no scanner state shared
between calls.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Pattern, Sequence


@dataclass(frozen=True)
class Span:
    start: int
    end: int
    text: str


def find_spans(pattern: Pattern, text: str, group: int = 0) -> List[Span]:
    """All non-overlapping matches of ``pattern`` in ``text``.

    With ``group`` > 0 the span covers that capture group; matches where the
    group did not participate are skipped.
    """
    spans = []
    for match in pattern.finditer(text):
        if match.group(group) is None:
            continue
        start, end = match.span(group)
        spans.append(Span(start, end, match.group(group)))
    return spans


def find_tokens(pattern: Pattern, text: str, group: int = 1) -> List[str]:
    """Stripped, de-duplicated captured tokens in order of first appearance."""
    tokens: List[str] = []
    for span in find_spans(pattern, text, group if pattern.groups >= group else 0):
        token = span.text.strip()
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def merge_overlapping(spans: Iterable[Span]) -> List[Span]:
    """Drop spans overlapping an earlier (then longer) span."""
    ordered = sorted(spans, key=lambda s: (s.start, -(s.end - s.start)))
    kept: List[Span] = []
    for span in ordered:
        if kept and span.start < kept[-1].end:
            continue
        kept.append(span)
    return kept


def replace_spans(
    text: str,
    spans: Sequence[Span],
    replacement: "str | Callable[[Span], str]",
) -> str:
    """Rebuild ``text`` with each non-overlapping span replaced."""
    out = []
    cursor = 0
    for span in merge_overlapping(spans):
        out.append(text[cursor:span.start])
        out.append(replacement(span) if callable(replacement) else replacement)
        cursor = span.end
    out.append(text[cursor:])
    return "".join(out)
