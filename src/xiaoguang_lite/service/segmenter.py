from __future__ import annotations

import logging
import re

import jieba
import jieba.analyse

jieba.setLogLevel(logging.WARNING)

_CJK = re.compile(r"[\u4e00-\u9fa5]")
_LATIN_WORD = re.compile(r"[a-z0-9_]+")
_LATIN_NAME = re.compile(r"\b[A-Z][a-z]{1,15}\b")
_STOPWORDS = {
    "我", "你", "他", "她", "它", "吗", "呢", "啊", "呀", "的", "了", "是", "在",
    "和", "也", "就", "都", "吧", "么", "什么", "怎么", "这个", "那个",
    "the", "a", "an", "is", "are", "of", "to", "and", "or", "in", "on",
}


def tokenize(text: str) -> set[str]:
    raw = str(text or "").strip().lower()
    if not raw:
        return set()
    tokens: set[str] = set()
    for token in jieba.cut_for_search(raw):
        t = token.strip()
        if not t or t in _STOPWORDS:
            continue
        if _CJK.search(t) or _LATIN_WORD.fullmatch(t):
            tokens.add(t)
    return tokens


def extract_keywords(text: str, top_k: int = 20) -> list[str]:
    raw = str(text or "").strip()
    if not raw:
        return []
    keywords = [
        k for k in jieba.analyse.extract_tags(raw, topK=max(1, int(top_k))) if k
    ]
    if keywords:
        return [k for k in keywords if k.lower() not in _STOPWORDS]
    # extract_tags drops everything for very short inputs
    return sorted(tokenize(raw), key=len, reverse=True)[: max(1, int(top_k))]


def extract_person_candidates(text: str, limit: int = 10) -> list[str]:
    out: list[str] = []
    for word in extract_keywords(text, top_k=20):
        if _CJK.search(word) and 2 <= len(word) <= 4 and word not in out:
            out.append(word)
    for match in _LATIN_NAME.findall(str(text or "")):
        if match.lower() not in _STOPWORDS and match not in out:
            out.append(match)
    return out[: max(0, int(limit))]


def estimate_tokens(text: str) -> int:
    """Roughly two CJK characters or four other characters per token."""
    value = str(text or "")
    cjk = len(_CJK.findall(value))
    other = len(value) - cjk
    return cjk // 2 + other // 4


def token_overlap(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return float(len(a & b)) / float(max(1, len(a | b)))
