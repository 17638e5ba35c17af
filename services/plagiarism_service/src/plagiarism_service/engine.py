from __future__ import annotations

import logging
import threading
import time
from difflib import SequenceMatcher
from itertools import combinations
from typing import Callable, Iterable, Sequence

from .candidates import CandidateSelector
from .errors import GenerationCancelled, GenerationTimedOut
from .schemas import HighlightData, MatchRegion, MatchType, SimilarityDraft, SubmissionRecord
from .scorer import SimilarityScorer
from .tokenizer import significant_lines, tokenize

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

DEFAULT_SCORE_FLOOR = 10.0
DEFAULT_HIGH_SIMILARITY_THRESHOLD = 60.0


class CancellationToken:
    """Кооперативная отмена: движок проверяет токен перед каждым сравнением."""

    def __init__(self, timeout: float | None = None):
        self._event = threading.Event()
        self._deadline = None
        self.arm(timeout)

    def arm(self, timeout: float | None) -> None:
        """Запустить отсчёт времени заново с текущего момента."""
        self._deadline = time.monotonic() + timeout if timeout else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled("generation was cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise GenerationTimedOut("generation exceeded its time limit")


def _line_keys(code: str) -> list[tuple[int, str, str]]:
    # (номер строки, текст, нормализованные токены); строки без токенов не участвуют
    keyed = []
    for index, text in significant_lines(code):
        key = " ".join(tokenize(text))
        if key:
            keyed.append((index, text, key))
    return keyed


def build_highlight_data(code1: str, code2: str) -> HighlightData:
    """Совпадающие подряд идущие строки (без отступов и комментариев).

    Строки сравниваются после нормализации литералов. Участок, где текст
    совпадает дословно, помечается EXACT_MATCH; где совпадает только
    структура (отличаются строки или числа), STRUCTURAL_MATCH.
    """
    lines1 = _line_keys(code1)
    lines2 = _line_keys(code2)
    matcher = SequenceMatcher(None, [k for _, _, k in lines1], [k for _, _, k in lines2], autojunk=False)

    regions = []
    for block in matcher.get_matching_blocks():
        start = 0
        while start < block.size:
            exact = lines1[block.a + start][1] == lines2[block.b + start][1]
            end = start
            while end + 1 < block.size and (lines1[block.a + end + 1][1] == lines2[block.b + end + 1][1]) == exact:
                end += 1
            regions.append(
                MatchRegion(
                    submission1_line_start=lines1[block.a + start][0],
                    submission1_line_end=lines1[block.a + end][0],
                    submission2_line_start=lines2[block.b + start][0],
                    submission2_line_end=lines2[block.b + end][0],
                    match_type=MatchType.EXACT_MATCH if exact else MatchType.STRUCTURAL_MATCH,
                )
            )
            start = end + 1
    return HighlightData(matches=regions)


class PlagiarismEngine:
    def __init__(
        self,
        scorer: SimilarityScorer | None = None,
        selector: CandidateSelector | None = None,
        score_floor: float = DEFAULT_SCORE_FLOOR,
    ):
        self.scorer = scorer or SimilarityScorer()
        self.selector = selector or CandidateSelector()
        self.score_floor = score_floor

    def detect_plagiarism(
        self,
        submissions: Sequence[SubmissionRecord],
        progress_callback: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        normalize: bool = True,
    ) -> list[SimilarityDraft]:
        """Полный перебор: каждая неупорядоченная пара ровно один раз."""
        tokens = [tokenize(s.code_content, normalize) for s in submissions]
        pairs = list(combinations(range(len(submissions)), 2))
        return self._score_pairs(submissions, tokens, pairs, progress_callback, cancel_token)

    def detect_plagiarism_fast(
        self,
        submissions: Sequence[SubmissionRecord],
        progress_callback: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        normalize: bool = True,
    ) -> list[SimilarityDraft]:
        """Как detect_plagiarism, но только по кандидатам из CandidateSelector.

        Пары с оценкой ниже score_floor отбрасываются.
        """
        tokens = [tokenize(s.code_content, normalize) for s in submissions]
        pairs = self.selector.select([s.code_hash for s in submissions], tokens)
        scored = self._score_pairs(submissions, tokens, pairs, progress_callback, cancel_token)
        kept = [s for s in scored if s.similarity_score >= self.score_floor]
        logger.info(
            "fast detection: %d submissions, %d candidate pairs, %d above floor %.1f",
            len(submissions), len(pairs), len(kept), self.score_floor,
        )
        return kept

    def detect_against_target(
        self,
        target: SubmissionRecord,
        others: Sequence[SubmissionRecord],
        progress_callback: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        normalize: bool = True,
    ) -> list[SimilarityDraft]:
        """Звезда: target сравнивается с каждым из others, others между собой нет."""
        submissions = [target, *others]
        tokens = [tokenize(s.code_content, normalize) for s in submissions]
        pairs = [(0, j) for j in range(1, len(submissions))]
        return self._score_pairs(submissions, tokens, pairs, progress_callback, cancel_token)

    def find_high_similarity_pairs(
        self,
        submissions: Sequence[SubmissionRecord],
        threshold: float = DEFAULT_HIGH_SIMILARITY_THRESHOLD,
        progress_callback: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        normalize: bool = True,
    ) -> list[SimilarityDraft]:
        similarities = self.detect_plagiarism(submissions, progress_callback, cancel_token, normalize)
        high = [s for s in similarities if s.similarity_score >= threshold]
        return sorted(high, key=lambda s: s.similarity_score, reverse=True)

    def _score_pairs(
        self,
        submissions: Sequence[SubmissionRecord],
        tokens: Sequence[Sequence[str]],
        pairs: Iterable[tuple[int, int]],
        progress_callback: ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ) -> list[SimilarityDraft]:
        pairs = list(pairs)
        total = len(pairs)
        similarities = []

        for current, (i, j) in enumerate(pairs, start=1):
            if cancel_token is not None:
                cancel_token.check()

            first, second = submissions[i], submissions[j]
            scores = self.scorer.score_tokens(tokens[i], tokens[j])
            similarities.append(
                SimilarityDraft(
                    submission1_id=first.id,
                    submission2_id=second.id,
                    similarity_score=scores.combined_score,
                    jaccard_score=scores.jaccard_score,
                    lcs_score=scores.lcs_score,
                    highlight_data=build_highlight_data(first.code_content, second.code_content),
                )
            )

            if progress_callback is not None:
                progress_callback(current, total)

        return similarities
