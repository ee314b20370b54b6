"""Merge candidates that point at the same image URL."""
from __future__ import annotations

from dataclasses import replace
from typing import Iterable

import structlog

from .models import Candidate

logger = structlog.get_logger()


class ResultDeduplicator:
    """
    Groups candidates by exact (case-sensitive) target URL.

    The first occurrence is kept as the canonical record; later occurrences only
    contribute their search terms. Output order is first-occurrence order.
    """

    def deduplicate(self, candidates: Iterable[Candidate]) -> list[Candidate]:
        canonical: dict[str, Candidate] = {}
        seen = 0

        for candidate in candidates:
            seen += 1
            if not candidate.target_url:
                logger.debug("Dropping candidate without target URL", source=candidate.source)
                continue

            existing = canonical.get(candidate.target_url)
            if existing is None:
                canonical[candidate.target_url] = replace(candidate, search_terms=list(candidate.search_terms))
                continue

            for term in candidate.search_terms:
                if term not in existing.search_terms:
                    existing.search_terms.append(term)

        unique = list(canonical.values())
        if len(unique) != seen:
            logger.info("Deduplicated candidates", before=seen, after=len(unique))
        return unique
