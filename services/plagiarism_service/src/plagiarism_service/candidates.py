from __future__ import annotations

import logging
from collections import defaultdict
from itertools import combinations
from typing import Sequence

from datasketch import MinHash, MinHashLSH

logger = logging.getLogger(__name__)

HASH_PREFIX_LENGTH = 8


class CandidateSelector:
    """Отбор пар-кандидатов для быстрого режима.

    Каждое решение получает MinHash-подпись по шинглам из shingle_size
    токенов; подпись режется на bands полос (LSH). Пара становится
    кандидатом, если совпала хотя бы одна полоса или совпал префикс
    code_hash. Быстрый режим может пропустить похожую пару, но никогда
    не добавляет пару, которой нет в полном переборе.
    """

    def __init__(
        self,
        shingle_size: int = 5,
        num_perm: int = 64,
        bands: int = 16,
        min_submissions: int = 20,
        seed: int = 1,
    ):
        if shingle_size < 1:
            raise ValueError("shingle_size must be positive")
        if bands < 1 or num_perm % bands != 0:
            raise ValueError("num_perm must be a multiple of bands")
        self.shingle_size = shingle_size
        self.num_perm = num_perm
        self.bands = bands
        self.rows = num_perm // bands
        self.min_submissions = min_submissions
        self.seed = seed

    def shingles(self, tokens: Sequence[str]) -> set[tuple[str, ...]]:
        if not tokens:
            return set()
        if len(tokens) < self.shingle_size:
            return {tuple(tokens)}
        k = self.shingle_size
        return {tuple(tokens[i:i + k]) for i in range(len(tokens) - k + 1)}

    def signature(self, tokens: Sequence[str]) -> MinHash | None:
        shingles = self.shingles(tokens)
        if not shingles:
            return None
        mh = MinHash(num_perm=self.num_perm, seed=self.seed)
        for shingle in shingles:
            mh.update("\x1f".join(shingle).encode("utf-8"))
        return mh

    def select(self, code_hashes: Sequence[str], token_lists: Sequence[Sequence[str]]) -> list[tuple[int, int]]:
        """Индексы пар (i, j), i < j, которые стоит сравнивать полностью."""
        if len(code_hashes) != len(token_lists):
            raise ValueError("code_hashes and token_lists must have the same length")

        n = len(token_lists)
        if n < 2:
            return []
        if n < self.min_submissions:
            return list(combinations(range(n), 2))

        pairs: set[tuple[int, int]] = set()

        # одинаковое начало code_hash: почти наверняка тот же файл
        by_prefix: dict[str, list[int]] = defaultdict(list)
        for index, code_hash in enumerate(code_hashes):
            if code_hash:
                by_prefix[code_hash[:HASH_PREFIX_LENGTH]].append(index)
        for members in by_prefix.values():
            pairs.update(combinations(members, 2))

        lsh = MinHashLSH(num_perm=self.num_perm, params=(self.bands, self.rows))
        signatures: dict[int, MinHash] = {}
        for index, tokens in enumerate(token_lists):
            sig = self.signature(tokens)
            if sig is None:
                continue
            signatures[index] = sig
            lsh.insert(index, sig)
        for index, sig in signatures.items():
            for other in lsh.query(sig):
                if other > index:
                    pairs.add((index, other))

        logger.debug("candidate selection: %d of %d pairs kept", len(pairs), n * (n - 1) // 2)
        return sorted(pairs)
