from __future__ import annotations

import re
from typing import FrozenSet, Iterable, Set

_PUNCT_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")

# Listing noise that says nothing about which venue an activity is.
TITLE_FILLERS: FrozenSet[str] = frozenset({
    "ticket", "tickets", "tour", "tours", "guided", "exclusive", "skip", "the", "line",
    "priority", "access", "entry", "admission", "a", "an", "and", "&",
    "in", "at", "on", "of", "to", "for", "from", "with", "by", "into", "near",
})

# Landmark and activity-type words that carry identity in this domain.
DOMAIN_KEYWORDS: tuple = (
    "seine", "river", "cruise", "tour", "ticket", "paris", "eiffel", "tower",
    "louvre", "museum", "palace", "guided", "skip", "line", "priority", "access",
)

LEVENSHTEIN_WEIGHT = 0.3
JACCARD_WEIGHT = 0.4
KEYWORD_WEIGHT = 0.3


def normalize_text(s: str) -> str:
    t = _PUNCT_RE.sub(" ", (s or "").lower())
    return _WS_RE.sub(" ", t).strip()


def normalize_title(s: str) -> str:
    """Lower-case, punctuation-free title with filler tokens removed."""
    words = [w for w in normalize_text(s).split(" ") if w and w not in TITLE_FILLERS]
    return " ".join(words)


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost)
        prev = cur
    return prev[-1]


def levenshtein_similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def _word_set(s: str) -> Set[str]:
    return {w for w in s.split(" ") if w}


def word_set_jaccard(a: str, b: str) -> float:
    wa, wb = _word_set(a), _word_set(b)
    union = wa | wb
    if not union:
        return 0.0
    return len(wa & wb) / len(union)


def keyword_overlap(a: str, b: str, keywords: Iterable[str] = DOMAIN_KEYWORDS) -> float:
    """Share of domain keywords present in either text that are present in both."""
    wa, wb = _word_set(a), _word_set(b)
    total = matching = 0
    for kw in keywords:
        in_a, in_b = kw in wa, kw in wb
        if in_a or in_b:
            total += 1
            if in_a and in_b:
                matching += 1
    return matching / total if total else 0.0


def combined_similarity(a: str, b: str) -> float:
    """
    0.3 x Levenshtein + 0.4 x word-set Jaccard + 0.3 x domain keyword overlap.

    Edit distance and Jaccard run on filler-stripped titles; keyword overlap
    runs on the full normalized text since several fillers are also keywords.
    """
    full_a, full_b = normalize_text(a), normalize_text(b)
    title_a, title_b = normalize_title(a) or full_a, normalize_title(b) or full_b
    return (
        LEVENSHTEIN_WEIGHT * levenshtein_similarity(title_a, title_b)
        + JACCARD_WEIGHT * word_set_jaccard(title_a, title_b)
        + KEYWORD_WEIGHT * keyword_overlap(full_a, full_b)
    )
