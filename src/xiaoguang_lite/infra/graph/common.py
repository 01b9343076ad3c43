from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class RelationRecord:
    person_a: str
    person_b: str
    relation_type: str
    description: str = ""
    confidence: float = 0.5
    source: str = ""
    created_at: int = 0
    updated_at: int = 0

    def other(self, name: str) -> str:
        return self.person_b if self.person_a == name else self.person_a

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, value: Any) -> "RelationRecord | None":
        if not isinstance(value, dict):
            return None
        a = str(value.get("person_a") or "").strip()
        b = str(value.get("person_b") or "").strip()
        relation_type = str(value.get("relation_type") or "").strip()
        if not a or not b or not relation_type:
            return None
        try:
            confidence = float(value.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        return cls(
            person_a=a,
            person_b=b,
            relation_type=relation_type,
            description=str(value.get("description") or ""),
            confidence=max(0.0, min(1.0, confidence)),
            source=str(value.get("source") or ""),
            created_at=_int(value.get("created_at")),
            updated_at=_int(value.get("updated_at")),
        )


@dataclass(frozen=True)
class GraphPath:
    nodes: list[str] = field(default_factory=list)
    relations: list[RelationRecord] = field(default_factory=list)

    @property
    def length(self) -> int:
        return len(self.relations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": list(self.nodes),
            "relations": [r.to_dict() for r in self.relations],
            "length": self.length,
        }


def normalize_pair(person_a: str, person_b: str) -> tuple[str, str]:
    """Strip both names and put them in lexicographic order."""
    a = str(person_a or "").strip()
    b = str(person_b or "").strip()
    if not a or not b:
        raise ValueError("both person names are required")
    if a == b:
        raise ValueError(f"cannot relate {a} to itself")
    return (a, b) if a <= b else (b, a)


def merge_confidence(old: float, new: float) -> float:
    return max(0.0, min(1.0, (float(old) + float(new)) / 2.0))


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
