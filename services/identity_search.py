"""
Identity-based text search: builds query variants from identity metadata and
fans them out to a text-query provider in parallel.
"""

import asyncio
from typing import Optional

import structlog

from pipeline.deduplicator import ResultDeduplicator
from pipeline.models import Candidate, IdentityMetadata

logger = structlog.get_logger()


def build_query_variants(identity: Optional[IdentityMetadata]) -> list[str]:
    """
    Ordered query variants: name; name+location; name+employer;
    name+location+employer. Variants needing a missing field are skipped.
    """
    if identity is None or not identity.name:
        return []

    name = identity.name
    variants = [name]
    if identity.location:
        variants.append(f"{name} {identity.location}")
    if identity.employer:
        variants.append(f"{name} {identity.employer}")
    if identity.location and identity.employer:
        variants.append(f"{name} {identity.location} {identity.employer}")
    return variants


class IdentityQuerySearch:
    """
    Text-query provider variant.

    Each variant is searched independently; a failing variant contributes no
    candidates without affecting its siblings. Results are merged by target
    URL with search terms concatenated.
    """

    name = "identity_text"

    def __init__(self, provider, deduplicator: Optional[ResultDeduplicator] = None):
        """
        Args:
            provider: TextQueryProvider to send each variant to
            deduplicator: Merger for results of the variants
        """
        self.provider = provider
        self.deduplicator = deduplicator or ResultDeduplicator()

    async def search(self, identity: Optional[IdentityMetadata]) -> list[Candidate]:
        variants = build_query_variants(identity)
        if not variants:
            return []

        logger.info("Running identity text queries", variants=len(variants))
        outcomes = await asyncio.gather(
            *(self.provider.search_text(variant) for variant in variants),
            return_exceptions=True
        )

        merged: list[Candidate] = []
        for variant, outcome in zip(variants, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("Text query variant failed", query=variant, error=str(outcome))
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            for candidate in outcome:
                if variant not in candidate.search_terms:
                    candidate.search_terms.append(variant)
            merged.extend(outcome)

        return self.deduplicator.deduplicate(merged)
