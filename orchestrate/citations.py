"""
Citation merging for search-augmented completions.

Sources arrive mid-stream in two shapes (inline `url_citation` annotations
and the older delta `citations` list). Both are folded into one ordered set
keyed on the normalized URL: the first sighting wins, later duplicates are
ignored, and the 1-based number is fixed when an entry is inserted.
"""

from __future__ import annotations

import logging
from typing import Iterable
from urllib.parse import urlsplit, urlunsplit

from orchestrate.models import Citation, CitationFragment

logger = logging.getLogger(__name__)

CITATIONS_HEADER = "**Citations:**"


def normalize_url(url: str) -> str:
    """Key used for de-duplication: trimmed, scheme/host lowercased, no fragment or trailing slash."""
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme and not parts.netloc:
        return url.rstrip("/")
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def merge_citations(
    current: list[Citation],
    fragments: Iterable[CitationFragment],
) -> list[Citation]:
    """
    Return `current` extended with every fragment whose URL hasn't been seen.

    Existing entries are never touched or renumbered. The input list is not
    mutated; callers replace their reference with the result.
    """
    merged = list(current)
    seen = {normalize_url(c.url) for c in merged}
    for fragment in fragments:
        key = normalize_url(fragment.url)
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(fragment.to_citation(number=len(merged) + 1))
    if len(merged) != len(current):
        logger.debug("Citations: %d -> %d", len(current), len(merged))
    return merged


def render_citations(citations: list[Citation]) -> str:
    """
    Markdown block appended to a finished search answer.

    Ordered by citation number; the list is renumbered from 1 for display.
    Empty input renders nothing.
    """
    if not citations:
        return ""
    lines = ["", "", CITATIONS_HEADER]
    for index, citation in enumerate(sorted(citations, key=lambda c: c.number), 1):
        lines.append(f"[{index}] {citation.title}: {citation.url}")
    return "\n".join(lines) + "\n"
