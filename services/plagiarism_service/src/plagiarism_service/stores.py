from __future__ import annotations

import datetime as dt
import hashlib
import logging
from contextlib import contextmanager
from typing import Iterator, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .errors import PersistenceFailure
from .models import AuditLog, Report, Similarity, Submission
from .schemas import (
    AlgorithmSettings,
    ReportCreate,
    ReportStatus,
    ReportSummary,
    SimilarityDraft,
    SimilarityOut,
    SubmissionCreate,
    SubmissionRecord,
)

logger = logging.getLogger(__name__)

AUDIT_SUCCESS = "SUCCESS"
AUDIT_FAILED = "FAILED"


class SubmissionStore(Protocol):
    def get_all_submissions_by_assignment(self, assignment_id: int) -> list[SubmissionRecord]: ...

    def get_submission_by_id(self, submission_id: int) -> SubmissionRecord | None: ...


class ReportStore(Protocol):
    def create_report(self, report: ReportCreate) -> ReportSummary: ...

    def update_report(self, report: ReportSummary) -> ReportSummary: ...

    def create_similarity(self, report_id: int, similarity: SimilarityDraft) -> SimilarityOut: ...

    def complete_report(self, report_id: int, similarities: Sequence[SimilarityDraft], total_pairs: int) -> ReportSummary: ...

    def delete_report(self, report_id: int) -> None: ...

    def get_similarities_by_report(self, report_id: int) -> list[SimilarityOut]: ...

    def get_similarity_by_id(self, similarity_id: int) -> SimilarityOut | None: ...

    def get_report_by_id(self, report_id: int) -> ReportSummary | None: ...

    def get_reports_by_assignment(self, assignment_id: int) -> list[ReportSummary]: ...


class AuditLogger(Protocol):
    def log(
        self,
        actor_id: int,
        action: str,
        target_type: str,
        target_id: str | None = None,
        result: str = AUDIT_SUCCESS,
        details: str | None = None,
    ) -> None: ...


class SettingsProvider(Protocol):
    def get_algorithm_settings(self) -> AlgorithmSettings: ...


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    db = session_factory()
    try:
        yield db
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceFailure(f"Database error: {e}") from e
    finally:
        db.close()


def compute_code_hash(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class SqlSubmissionStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create_submission(self, payload: SubmissionCreate) -> SubmissionRecord:
        with session_scope(self._session_factory) as db:
            record = Submission(
                student_id=payload.student_id,
                assignment_id=payload.assignment_id,
                file_name=payload.file_name,
                code_content=payload.code_content,
                code_hash=compute_code_hash(payload.code_content),
                submitted_at=payload.submitted_at or dt.datetime.utcnow(),
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            return SubmissionRecord.model_validate(record)

    def get_all_submissions_by_assignment(self, assignment_id: int) -> list[SubmissionRecord]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(Submission)
                .where(Submission.assignment_id == assignment_id)
                .order_by(Submission.submitted_at.asc(), Submission.id.asc())
            ).scalars().all()
            return [SubmissionRecord.model_validate(r) for r in rows]

    def get_submission_by_id(self, submission_id: int) -> SubmissionRecord | None:
        with session_scope(self._session_factory) as db:
            record = db.get(Submission, submission_id)
            return SubmissionRecord.model_validate(record) if record else None


def _similarity_row(report_id: int, similarity: SimilarityDraft) -> Similarity:
    data = similarity.model_dump(mode="json", exclude={"created_at"})
    return Similarity(report_id=report_id, created_at=similarity.created_at, **data)


class SqlReportStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create_report(self, report: ReportCreate) -> ReportSummary:
        with session_scope(self._session_factory) as db:
            record = Report(
                assignment_id=report.assignment_id,
                executor_id=report.executor_id,
                mode=report.mode.value,
                status=ReportStatus.PENDING.value,
                total_submissions=report.total_submissions,
                total_pairs=report.total_pairs,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            return ReportSummary.model_validate(record)

    def update_report(self, report: ReportSummary) -> ReportSummary:
        with session_scope(self._session_factory) as db:
            record = self._require(db, report.id)
            record.status = report.status.value
            record.total_submissions = report.total_submissions
            record.total_pairs = report.total_pairs
            record.completed_at = report.completed_at
            db.commit()
            db.refresh(record)
            return ReportSummary.model_validate(record)

    def create_similarity(self, report_id: int, similarity: SimilarityDraft) -> SimilarityOut:
        with session_scope(self._session_factory) as db:
            self._require(db, report_id)
            row = _similarity_row(report_id, similarity)
            db.add(row)
            db.commit()
            db.refresh(row)
            return SimilarityOut.model_validate(row)

    def complete_report(self, report_id: int, similarities: Sequence[SimilarityDraft], total_pairs: int) -> ReportSummary:
        """Записать всю пачку Similarity и перевести отчёт в COMPLETED одной транзакцией."""
        with session_scope(self._session_factory) as db:
            record = self._require(db, report_id)
            db.add_all([_similarity_row(report_id, s) for s in similarities])
            record.total_pairs = total_pairs
            record.status = ReportStatus.COMPLETED.value
            record.completed_at = dt.datetime.utcnow()
            db.commit()
            db.refresh(record)
            return ReportSummary.model_validate(record)

    def delete_report(self, report_id: int) -> None:
        with session_scope(self._session_factory) as db:
            record = db.get(Report, report_id)
            if record is not None:
                db.delete(record)
                db.commit()

    def get_similarities_by_report(self, report_id: int) -> list[SimilarityOut]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(Similarity).where(Similarity.report_id == report_id).order_by(Similarity.id.asc())
            ).scalars().all()
            return [SimilarityOut.model_validate(r) for r in rows]

    def get_similarity_by_id(self, similarity_id: int) -> SimilarityOut | None:
        with session_scope(self._session_factory) as db:
            row = db.get(Similarity, similarity_id)
            return SimilarityOut.model_validate(row) if row else None

    def get_report_by_id(self, report_id: int) -> ReportSummary | None:
        with session_scope(self._session_factory) as db:
            record = db.get(Report, report_id)
            return ReportSummary.model_validate(record) if record else None

    def get_reports_by_assignment(self, assignment_id: int) -> list[ReportSummary]:
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(Report).where(Report.assignment_id == assignment_id).order_by(Report.created_at.desc(), Report.id.desc())
            ).scalars().all()
            return [ReportSummary.model_validate(r) for r in rows]

    @staticmethod
    def _require(db: Session, report_id: int) -> Report:
        record = db.get(Report, report_id)
        if record is None:
            raise PersistenceFailure(f"Report {report_id} does not exist")
        return record


class SqlAuditLogger:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def log(
        self,
        actor_id: int,
        action: str,
        target_type: str,
        target_id: str | None = None,
        result: str = AUDIT_SUCCESS,
        details: str | None = None,
    ) -> None:
        # аудит не должен ронять основную операцию
        try:
            with self._session_factory() as db:
                db.add(
                    AuditLog(
                        actor_id=actor_id,
                        action=action,
                        target_type=target_type,
                        target_id=target_id,
                        result=result,
                        details=details,
                    )
                )
                db.commit()
        except Exception:
            logger.exception("Failed to write audit log entry %s on %s", action, target_type)


class ConfigSettingsProvider:
    def __init__(self, settings: Settings):
        self._settings = settings

    def get_algorithm_settings(self) -> AlgorithmSettings:
        return AlgorithmSettings(
            similarity_threshold=self._settings.similarity_threshold,
            fast_compare_mode=self._settings.fast_compare_mode,
        )
