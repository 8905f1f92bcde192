from __future__ import annotations

from collections import Counter
import math
import re
from typing import Iterable, TypeVar

_TOKEN_RE = re.compile(r'[a-z0-9_]+')

T = TypeVar('T')


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(str(text or '').lower())


def cosine_similarity(left: str, right: str) -> float:
    a = Counter(tokenize(left))
    b = Counter(tokenize(right))
    if not a or not b:
        return 0.0
    dot = sum(count * b[token] for token, count in a.items() if token in b)
    if dot == 0:
        return 0.0
    norm = math.sqrt(sum(v * v for v in a.values())) * math.sqrt(sum(v * v for v in b.values()))
    return dot / norm


def rank(query: str, items: Iterable[tuple[T, str]], *, limit: int) -> list[tuple[T, float]]:
    """Score ``(item, text)`` pairs against ``query``; stable on ties."""
    scored = [(item, cosine_similarity(query, text)) for item, text in items]
    # sorted() is stable, so equal scores keep insertion order.
    scored = sorted(scored, key=lambda pair: pair[1], reverse=True)
    return scored[: max(0, int(limit))]
