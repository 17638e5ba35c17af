from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class PlagiarismError(RuntimeError):
    code = "plagiarism_error"


class InsufficientSubmissions(PlagiarismError):
    code = "insufficient_submissions"


class NoComparisonTarget(PlagiarismError):
    code = "no_comparison_target"


class PersistenceFailure(PlagiarismError):
    code = "persistence_failure"


class GenerationCancelled(PlagiarismError):
    code = "cancelled"


class GenerationTimedOut(GenerationCancelled):
    code = "timed_out"


class GenerationInProgress(PlagiarismError):
    code = "generation_in_progress"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Успех (value) или типизированная ошибка (error), без исключений наружу."""

    value: T | None = None
    error: PlagiarismError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: PlagiarismError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value
