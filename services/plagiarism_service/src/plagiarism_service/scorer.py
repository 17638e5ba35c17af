from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .tokenizer import tokenize

MAX_SCORE = 100.0
MIN_SCORE = 0.0

JACCARD_WEIGHT = 0.4
LCS_WEIGHT = 0.6


@dataclass(frozen=True)
class SimilarityScores:
    jaccard_score: float
    lcs_score: float
    combined_score: float


def jaccard_similarity(tokens1: Sequence[str], tokens2: Sequence[str]) -> float:
    """|A ∩ B| / |A ∪ B| по множествам токенов, шкала 0-100."""
    set1, set2 = set(tokens1), set(tokens2)
    union = len(set1 | set2)
    if union == 0:
        return MIN_SCORE
    return len(set1 & set2) / union * MAX_SCORE


def lcs_length(tokens1: Sequence[str], tokens2: Sequence[str]) -> int:
    # по памяти O(min(m, n)): храним только две строки таблицы
    if len(tokens1) < len(tokens2):
        tokens1, tokens2 = tokens2, tokens1
    if not tokens2:
        return 0

    previous = [0] * (len(tokens2) + 1)
    for left in tokens1:
        current = [0]
        for j, right in enumerate(tokens2, start=1):
            if left == right:
                current.append(previous[j - 1] + 1)
            else:
                current.append(max(previous[j], current[j - 1]))
        previous = current
    return previous[-1]


def lcs_similarity(tokens1: Sequence[str], tokens2: Sequence[str]) -> float:
    """Длина LCS / max(len1, len2), шкала 0-100."""
    longest = max(len(tokens1), len(tokens2))
    if longest == 0:
        return MIN_SCORE
    return lcs_length(tokens1, tokens2) / longest * MAX_SCORE


class SimilarityScorer:
    """Оценка сходства пары токенизированных решений.

    combined = 0.4 * jaccard + 0.6 * lcs. Функция чистая и симметричная.
    Одинаковый код даёт 100, но пустой вход (в том числе код из одних
    комментариев, после токенизации пустой) всегда даёт 0, даже если
    обе стороны совпадают байт в байт.
    """

    def __init__(self, jaccard_weight: float = JACCARD_WEIGHT, lcs_weight: float = LCS_WEIGHT, precision: int = 2):
        if jaccard_weight < 0 or lcs_weight < 0 or jaccard_weight + lcs_weight <= 0:
            raise ValueError("weights must be non-negative and not both zero")
        total = jaccard_weight + lcs_weight
        self.jaccard_weight = jaccard_weight / total
        self.lcs_weight = lcs_weight / total
        self.precision = precision

    def score_tokens(self, tokens1: Sequence[str], tokens2: Sequence[str]) -> SimilarityScores:
        jaccard = jaccard_similarity(tokens1, tokens2)
        lcs = lcs_similarity(tokens1, tokens2)
        combined = jaccard * self.jaccard_weight + lcs * self.lcs_weight
        return SimilarityScores(
            jaccard_score=self._clamp(jaccard),
            lcs_score=self._clamp(lcs),
            combined_score=self._clamp(combined),
        )

    def score(self, code1: str, code2: str, normalize: bool = True) -> SimilarityScores:
        return self.score_tokens(tokenize(code1, normalize), tokenize(code2, normalize))

    def _clamp(self, value: float) -> float:
        return round(min(MAX_SCORE, max(MIN_SCORE, value)), self.precision)
