from __future__ import annotations

import hashlib
import math

from xiaoguang_lite.service.segmenter import tokenize


class HashEmbeddingProvider:
    """Deterministic offline embedding: signed feature hashing over jieba tokens."""

    name = "hash"

    def __init__(self, dim: int = 384) -> None:
        self.dim = max(8, int(dim))

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        tokens = tokenize(text)
        if not tokens:
            return vector
        for token in sorted(tokens):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            # longer tokens carry more meaning than single characters
            vector[idx] += sign * (1.0 + min(len(token), 4) * 0.25)
        norm = math.sqrt(sum(x * x for x in vector))
        if norm == 0:
            return vector
        return [x / norm for x in vector]
