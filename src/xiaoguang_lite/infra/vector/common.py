from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

WORLD_BOOK_COLLECTION = "xiaoguang_world_book"
CHARACTER_MEMORY_COLLECTION = "xiaoguang_character_memories"
RELATIONSHIP_CONTEXT_COLLECTION = "xiaoguang_relationship_contexts"


@dataclass(frozen=True)
class VectorHit:
    id: str
    document: str
    metadata: dict[str, Any] = field(default_factory=dict)
    distance: float = 1.0

    @property
    def score(self) -> float:
        return max(0.0, 1.0 - float(self.distance))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document": self.document,
            "metadata": dict(self.metadata),
            "distance": self.distance,
            "score": self.score,
        }


def cosine(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def clean_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Flatten metadata to scalar values; vector stores reject None and lists."""
    out: dict[str, Any] = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            out[str(key)] = ",".join(str(x) for x in value)
        elif isinstance(value, (str, int, float, bool)):
            out[str(key)] = value
        else:
            out[str(key)] = str(value)
    return out


def metadata_matches(metadata: dict[str, Any], where: dict[str, Any] | None) -> bool:
    if not where:
        return True
    return all(metadata.get(k) == v for k, v in where.items())
