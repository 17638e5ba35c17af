from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Sequence

from .engine import CancellationToken, PlagiarismEngine
from .errors import InsufficientSubmissions, NoComparisonTarget, PersistenceFailure, PlagiarismError, Result
from .schemas import (
    AlgorithmSettings,
    ReportCreate,
    ReportMode,
    ReportSummary,
    SimilarityDraft,
    SimilarityOut,
    SubmissionRecord,
)
from .stores import AUDIT_FAILED, AUDIT_SUCCESS, AuditLogger, ReportStore, SettingsProvider, SubmissionStore

logger = logging.getLogger(__name__)

ProgressListener = Callable[[float], None]

PROGRESS_FLOOR = 0.1
PROGRESS_SCORING_SPAN = 0.8
PROGRESS_DONE = 1.0

_ACTIONS = {
    ReportMode.LATEST_ONLY: "GENERATE_REPORT_LATEST",
    ReportMode.FULL_HISTORY: "GENERATE_REPORT_FULL_HISTORY",
    ReportMode.STUDENT_TARGET: "GENERATE_REPORT_STUDENT_TARGET",
}


@contextmanager
def _store_errors() -> Iterator[None]:
    # любая ошибка стороннего хранилища превращается в PersistenceFailure
    try:
        yield
    except PlagiarismError:
        raise
    except Exception as e:
        raise PersistenceFailure(f"Store call failed: {e}") from e


def latest_submissions_by_student(submissions: Sequence[SubmissionRecord]) -> list[SubmissionRecord]:
    """Последняя сдача каждого студента.

    Максимальный submitted_at; при равных временах побеждает больший id.
    Результат упорядочен по student_id.
    """
    latest: dict[int, SubmissionRecord] = {}
    for submission in submissions:
        current = latest.get(submission.student_id)
        if current is None or (submission.submitted_at, submission.id) > (current.submitted_at, current.id):
            latest[submission.student_id] = submission
    return [latest[student_id] for student_id in sorted(latest)]


class _ProgressTracker:
    # монотонный прогресс: значения меньше уже отданного не публикуются
    def __init__(self, listener: ProgressListener | None):
        self._listener = listener
        self._last = 0.0

    def update(self, value: float) -> None:
        value = min(PROGRESS_DONE, max(self._last, value))
        self._last = value
        if self._listener is not None:
            self._listener(value)

    def engine_callback(self, current: int, total: int) -> None:
        if total <= 0:
            return
        self.update(PROGRESS_FLOOR + (current / total) * PROGRESS_SCORING_SPAN)


class ReportCoordinator:
    def __init__(
        self,
        submission_store: SubmissionStore,
        report_store: ReportStore,
        engine: PlagiarismEngine,
        settings_provider: SettingsProvider,
        audit_logger: AuditLogger,
    ):
        self.submission_store = submission_store
        self.report_store = report_store
        self.engine = engine
        self.settings_provider = settings_provider
        self.audit_logger = audit_logger

    # ------------------------------------------------------------------
    # Генерация отчётов
    # ------------------------------------------------------------------
    def generate_report(
        self,
        mode: ReportMode,
        assignment_id: int,
        executor_id: int,
        student_id: int | None = None,
        progress_callback: ProgressListener | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Result[ReportSummary]:
        if mode == ReportMode.LATEST_ONLY:
            return self.generate_report_latest_only(assignment_id, executor_id, progress_callback, cancel_token)
        if mode == ReportMode.FULL_HISTORY:
            return self.generate_report_full_history(assignment_id, executor_id, progress_callback, cancel_token)
        if student_id is None:
            return self._fail(
                _ACTIONS[mode], executor_id, assignment_id,
                NoComparisonTarget("student_id is required for a student-target report"),
            )
        return self.generate_student_target_report(
            assignment_id, student_id, executor_id, progress_callback, cancel_token
        )

    def generate_report_latest_only(
        self,
        assignment_id: int,
        executor_id: int,
        progress_callback: ProgressListener | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Result[ReportSummary]:
        mode = ReportMode.LATEST_ONLY

        def select():
            latest = latest_submissions_by_student(
                self.submission_store.get_all_submissions_by_assignment(assignment_id)
            )
            if len(latest) < 2:
                raise InsufficientSubmissions("At least 2 students must have submitted")
            n = len(latest)
            return latest, n, n * (n - 1) // 2

        def detect(latest, algo: AlgorithmSettings, progress: _ProgressTracker):
            return self.engine.detect_plagiarism(
                latest, progress.engine_callback, cancel_token, normalize=not algo.fast_compare_mode
            )

        return self._generate(mode, assignment_id, executor_id, select, detect, progress_callback)

    def generate_report_full_history(
        self,
        assignment_id: int,
        executor_id: int,
        progress_callback: ProgressListener | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Result[ReportSummary]:
        mode = ReportMode.FULL_HISTORY

        def select():
            submissions = self.submission_store.get_all_submissions_by_assignment(assignment_id)
            if len({s.student_id for s in submissions}) < 2:
                raise InsufficientSubmissions("At least 2 students must have submitted")
            n = len(submissions)
            return submissions, n, n * (n - 1) // 2

        def detect(submissions, algo: AlgorithmSettings, progress: _ProgressTracker):
            return self.engine.detect_plagiarism_fast(
                submissions, progress.engine_callback, cancel_token, normalize=not algo.fast_compare_mode
            )

        # у быстрого режима число пар известно только после отбора кандидатов
        return self._generate(
            mode, assignment_id, executor_id, select, detect, progress_callback, count_written_pairs=True
        )

    def generate_student_target_report(
        self,
        assignment_id: int,
        student_id: int,
        executor_id: int | None = None,
        progress_callback: ProgressListener | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Result[ReportSummary]:
        mode = ReportMode.STUDENT_TARGET
        executor_id = student_id if executor_id is None else executor_id

        def select():
            latest = latest_submissions_by_student(
                self.submission_store.get_all_submissions_by_assignment(assignment_id)
            )
            own = next((s for s in latest if s.student_id == student_id), None)
            others = [s for s in latest if s.student_id != student_id]
            if own is None or not others:
                raise NoComparisonTarget("No submissions to compare against")
            return (own, others), len(others) + 1, len(others)

        def detect(selection, algo: AlgorithmSettings, progress: _ProgressTracker):
            own, others = selection
            return self.engine.detect_against_target(
                own, others, progress.engine_callback, cancel_token, normalize=not algo.fast_compare_mode
            )

        return self._generate(mode, assignment_id, executor_id, select, detect, progress_callback)

    def _generate(
        self,
        mode: ReportMode,
        assignment_id: int,
        executor_id: int,
        select,
        detect,
        progress_callback: ProgressListener | None,
        count_written_pairs: bool = False,
    ) -> Result[ReportSummary]:
        action = _ACTIONS[mode]
        progress = _ProgressTracker(progress_callback)
        report: ReportSummary | None = None

        try:
            with _store_errors():
                selection, total_submissions, total_pairs = select()
                algo = self.settings_provider.get_algorithm_settings()

                # 1) PENDING-отчёт виден сразу, пока идёт подсчёт
                report = self.report_store.create_report(
                    ReportCreate(
                        assignment_id=assignment_id,
                        executor_id=executor_id,
                        mode=mode,
                        total_submissions=total_submissions,
                        total_pairs=total_pairs,
                    )
                )
            progress.update(PROGRESS_FLOOR)
            logger.info(
                "Report %s (%s) started for assignment %s: %d submissions",
                report.id, mode.value, assignment_id, total_submissions,
            )

            # 2) подсчёт
            similarities = detect(selection, algo, progress)

            # 3) пачка Similarity + COMPLETED одной транзакцией, последним шагом
            written_pairs = len(similarities) if count_written_pairs else total_pairs
            with _store_errors():
                completed = self.report_store.complete_report(report.id, similarities, written_pairs)
        except PlagiarismError as e:
            self._abandon(report)
            return self._fail(action, executor_id, assignment_id, e)
        except Exception as e:
            logger.exception("%s crashed for assignment %s", action, assignment_id)
            self._abandon(report)
            return self._fail(action, executor_id, assignment_id, PlagiarismError(f"Unexpected error: {e}"))

        progress.update(PROGRESS_DONE)
        logger.info("Report %s completed: %d pairs", completed.id, completed.total_pairs)
        self.audit_logger.log(
            executor_id, action, "REPORT", str(completed.id), AUDIT_SUCCESS,
            f"assignment={assignment_id} submissions={completed.total_submissions} pairs={completed.total_pairs}",
        )
        return Result.success(completed)

    def _abandon(self, report: ReportSummary | None) -> None:
        # незавершённый отчёт удаляется; если не вышло, он остаётся PENDING
        if report is None:
            return
        try:
            with _store_errors():
                self.report_store.delete_report(report.id)
        except PlagiarismError:
            logger.warning("Could not discard report %s, it stays PENDING", report.id, exc_info=True)

    def _fail(self, action: str, actor_id: int, assignment_id: int, error: PlagiarismError) -> Result:
        logger.info("%s failed for assignment %s: %s", action, assignment_id, error)
        self.audit_logger.log(
            actor_id, action, "ASSIGNMENT", str(assignment_id), AUDIT_FAILED, f"{error.code}: {error}"
        )
        return Result.failure(error)

    # ------------------------------------------------------------------
    # Сравнение новой сдачи без сохранения отчёта
    # ------------------------------------------------------------------
    def compare_new_submission(
        self,
        assignment_id: int,
        new_submission_id: int,
        threshold: float | None = None,
        actor_id: int | None = None,
    ) -> Result[list[SimilarityDraft]]:
        """Сравнить сдачу со всеми остальными сдачами задания, отчёт не создаётся.

        actor_id по умолчанию - автор сдачи; для неизвестной сдачи 0.
        """
        action = "COMPARE_NEW_SUBMISSION"
        try:
            with _store_errors():
                submissions = self.submission_store.get_all_submissions_by_assignment(assignment_id)
                new_submission = next((s for s in submissions if s.id == new_submission_id), None)
                algo = self.settings_provider.get_algorithm_settings()
            if actor_id is None:
                actor_id = new_submission.student_id if new_submission is not None else 0
            if new_submission is None:
                self.audit_logger.log(
                    actor_id, action, "SUBMISSION", str(new_submission_id), AUDIT_SUCCESS,
                    f"assignment={assignment_id} unknown submission",
                )
                return Result.success([])
            others = [s for s in submissions if s.id != new_submission_id]
            similarities = self.engine.detect_against_target(
                new_submission, others, normalize=not algo.fast_compare_mode
            )
        except PlagiarismError as e:
            return self._fail(action, actor_id or 0, assignment_id, e)
        except Exception as e:
            logger.exception("%s crashed for submission %s", action, new_submission_id)
            return self._fail(action, actor_id or 0, assignment_id, PlagiarismError(f"Unexpected error: {e}"))

        if threshold is not None:
            similarities = [s for s in similarities if s.similarity_score >= threshold]
        self.audit_logger.log(
            actor_id, action, "SUBMISSION", str(new_submission_id), AUDIT_SUCCESS,
            f"assignment={assignment_id} matches={len(similarities)}",
        )
        return Result.success(similarities)

    # ------------------------------------------------------------------
    # Чтение
    # ------------------------------------------------------------------
    def get_algorithm_settings(self) -> AlgorithmSettings:
        return self.settings_provider.get_algorithm_settings()

    def get_report_by_id(self, report_id: int) -> Result[ReportSummary | None]:
        return self._read(lambda: self.report_store.get_report_by_id(report_id))

    def get_reports_by_assignment(self, assignment_id: int) -> Result[list[ReportSummary]]:
        return self._read(lambda: self.report_store.get_reports_by_assignment(assignment_id))

    def get_similarities_by_report(self, report_id: int) -> Result[list[SimilarityOut]]:
        return self._read(lambda: self.report_store.get_similarities_by_report(report_id))

    def get_similarity_by_id(self, similarity_id: int) -> Result[SimilarityOut | None]:
        return self._read(lambda: self.report_store.get_similarity_by_id(similarity_id))

    def get_high_similarity_pairs(self, report_id: int, threshold: float | None = None) -> Result[list[SimilarityOut]]:
        def load():
            limit = threshold
            if limit is None:
                limit = self.settings_provider.get_algorithm_settings().similarity_threshold
            similarities = self.report_store.get_similarities_by_report(report_id)
            high = [s for s in similarities if s.similarity_score >= limit]
            return sorted(high, key=lambda s: s.similarity_score, reverse=True)

        return self._read(load)

    @staticmethod
    def _read(load) -> Result:
        try:
            with _store_errors():
                return Result.success(load())
        except PlagiarismError as e:
            return Result.failure(e)
