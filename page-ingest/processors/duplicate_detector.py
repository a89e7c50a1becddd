#!/usr/bin/env python3
"""
Duplicate page detection.

Compares every pair of pages by text overlap, classifies the pairs into tiers,
proposes which pages to drop and groups pages into duplicate chains. Pure and
stateless: callers fetch the page texts and apply whatever removal the reviewer
confirms.
"""
from typing import Dict, Iterable, List, Optional, Set, Tuple

from config.settings import (
    DUPLICATE_EXACT_THRESHOLD,
    DUPLICATE_NEAR_THRESHOLD,
    DUPLICATE_SIMILAR_THRESHOLD,
)
from models.data_models import (
    DuplicateChain,
    DuplicatePair,
    DuplicateReport,
    DuplicateTier,
    PageText,
    Thresholds,
)
from utils.errors import ValidationError
from utils.text_utils import char_ngrams, normalize_text, word_set


def default_thresholds() -> Thresholds:
    return Thresholds(
        exact=DUPLICATE_EXACT_THRESHOLD,
        near_duplicate=DUPLICATE_NEAR_THRESHOLD,
        similar=DUPLICATE_SIMILAR_THRESHOLD,
    )


def validate_thresholds(thresholds: Thresholds) -> Thresholds:
    """Thresholds must be ordered exact >= near-duplicate >= similar, all within [0, 1]."""
    values = (thresholds.exact, thresholds.near_duplicate, thresholds.similar)
    if any(v < 0 or v > 1 for v in values):
        raise ValidationError("Thresholds must be between 0 and 1", field="thresholds")
    if not thresholds.exact >= thresholds.near_duplicate >= thresholds.similar:
        raise ValidationError("Thresholds must satisfy exact >= near_duplicate >= similar", field="thresholds")
    return thresholds


def _jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def word_similarity(norm1: str, norm2: str) -> float:
    """Jaccard overlap of the distinct words (3+ chars) of two normalized texts."""
    return _jaccard(word_set(norm1), word_set(norm2))


def ngram_similarity(norm1: str, norm2: str, n: int = 3) -> float:
    """Jaccard overlap of character n-grams; more forgiving of OCR letter noise."""
    return _jaccard(char_ngrams(norm1, n), char_ngrams(norm2, n))


def text_similarity(text1: str, text2: str) -> float:
    """Symmetric similarity in [0, 1]; identical normalized texts score exactly 1."""
    norm1, norm2 = normalize_text(text1), normalize_text(text2)
    return _normalized_similarity(norm1, norm2)


def _normalized_similarity(norm1: str, norm2: str) -> float:
    if not norm1 or not norm2:
        return 0.0
    if norm1 == norm2:
        return 1.0
    return max(word_similarity(norm1, norm2), ngram_similarity(norm1, norm2))


def classify(score: float, thresholds: Thresholds) -> Optional[DuplicateTier]:
    if score >= thresholds.exact:
        return DuplicateTier.EXACT
    if score >= thresholds.near_duplicate:
        return DuplicateTier.NEAR_DUPLICATE
    if score >= thresholds.similar:
        return DuplicateTier.SIMILAR
    return None


class DuplicateDetector:
    """Pairwise duplicate classification over one set of pages."""

    def __init__(self, thresholds: Optional[Thresholds] = None):
        self.thresholds = validate_thresholds(thresholds or default_thresholds())

    def detect(self, pages: Iterable[PageText]) -> DuplicateReport:
        candidates = [p for p in pages if p.text and p.text.strip()]
        if len(candidates) < 2:
            return DuplicateReport(message="Not enough pages to check for duplicates")

        position = {p.id: i for i, p in enumerate(candidates)}
        normalized = {p.id: normalize_text(p.text) for p in candidates}

        pairs: List[DuplicatePair] = []
        for i in range(len(candidates)):
            for j in range(i + 1, len(candidates)):
                a, b = candidates[i], candidates[j]
                score = _normalized_similarity(normalized[a.id], normalized[b.id])
                tier = classify(score, self.thresholds)
                if tier is not None:
                    pairs.append(DuplicatePair(a.id, b.id, score, tier))

        pairs.sort(key=lambda d: (-d.score, position[d.id1], position[d.id2]))

        return DuplicateReport(
            duplicates=pairs,
            suggested_removals=suggest_removals(pairs, candidates, normalized),
            chains=group_chains(pairs, position),
        )


def _loser(pair: DuplicatePair, pages: Dict[str, PageText], normalized: Dict[str, str], position: Dict[str, int]) -> Tuple[str, str]:
    """Return (winner, loser): lower confidence loses, then shorter text, then later page."""
    a, b = pages[pair.id1], pages[pair.id2]

    def rank(p: PageText):
        return (p.confidence, len(normalized[p.id]), -position[p.id])

    if rank(a) >= rank(b):
        return a.id, b.id
    return b.id, a.id


def suggest_removals(pairs: List[DuplicatePair], pages: List[PageText], normalized: Optional[Dict[str, str]] = None) -> List[str]:
    """Pages to drop so that one copy of each duplicated page survives.

    Pairs are processed best match first. A page that already won a pair is
    kept for good, and a page that is itself being removed cannot justify
    removing another one.
    """
    by_id = {p.id: p for p in pages}
    position = {p.id: i for i, p in enumerate(pages)}
    if normalized is None:
        normalized = {p.id: normalize_text(p.text) for p in pages}

    kept: Set[str] = set()
    removed: Set[str] = set()
    for pair in pairs:
        winner, loser = _loser(pair, by_id, normalized, position)
        if winner in removed or loser in removed or loser in kept:
            continue
        kept.add(winner)
        removed.add(loser)

    return sorted(removed, key=lambda pid: position[pid])


def group_chains(pairs: List[DuplicatePair], position: Dict[str, int]) -> List[DuplicateChain]:
    """Connected components of the pair graph (transitive closure)."""
    parent: Dict[str, str] = {}

    def find(x: str) -> str:
        parent.setdefault(x, x)
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(a: str, b: str):
        ra, rb = find(a), find(b)
        if ra == rb:
            return
        # Root at the earliest page so chains are stable
        if position[ra] <= position[rb]:
            parent[rb] = ra
        else:
            parent[ra] = rb

    for pair in pairs:
        union(pair.id1, pair.id2)

    members: Dict[str, List[str]] = {}
    for page_id in parent:
        members.setdefault(find(page_id), []).append(page_id)

    chains = []
    for root in sorted(members, key=lambda r: position[r]):
        group = sorted(members[root], key=lambda pid: position[pid])
        group_set = set(group)
        edges = [p for p in pairs if p.id1 in group_set]
        chains.append(DuplicateChain(members=group, edges=edges))
    return chains


def detect_duplicates(pages: Iterable[PageText], thresholds: Optional[Thresholds] = None) -> DuplicateReport:
    """Module-level entry point used by the API and the collection service."""
    return DuplicateDetector(thresholds).detect(pages)
