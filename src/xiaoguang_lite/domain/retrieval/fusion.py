from __future__ import annotations

from collections import defaultdict
from typing import Callable, Sequence, TypeVar

T = TypeVar("T")


def reciprocal_rank_fusion(
    ranked_lists: Sequence[Sequence[T]],
    *,
    key: Callable[[T], str],
    rrf_k: int = 60,
) -> list[tuple[T, float, set[str]]]:
    """Fuse ranked lists by summing ``1 / (rrf_k + rank)`` per item.

    Returns ``(item, fused_score, sources)`` sorted by fused score. The item
    kept for a key is the first one seen; ``sources`` holds the indexes of the
    contributing lists as strings.
    """
    if not ranked_lists:
        return []

    index: dict[str, T] = {}
    fused_scores: defaultdict[str, float] = defaultdict(float)
    source_map: defaultdict[str, set[str]] = defaultdict(set)

    for list_no, rows in enumerate(ranked_lists):
        for rank, row in enumerate(rows, start=1):
            rid = str(key(row) or "")
            if not rid:
                continue
            index.setdefault(rid, row)
            fused_scores[rid] += 1.0 / (rrf_k + rank)
            source_map[rid].add(str(list_no))

    fused = [(index[rid], float(score), source_map[rid]) for rid, score in fused_scores.items()]
    fused.sort(key=lambda x: x[1], reverse=True)
    return fused
