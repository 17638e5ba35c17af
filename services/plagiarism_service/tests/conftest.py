import os
import tempfile

os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="plagiarism-tests-"))

import datetime as dt

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from plagiarism_service.coordinator import ReportCoordinator
from plagiarism_service.db import init_db
from plagiarism_service.engine import PlagiarismEngine
from plagiarism_service.schemas import SubmissionCreate
from plagiarism_service.stores import SqlReportStore, SqlSubmissionStore

from fakes import BASE_TIME, RecordingAuditLogger, StaticSettingsProvider


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def submission_store(session_factory):
    return SqlSubmissionStore(session_factory)


@pytest.fixture
def report_store(session_factory):
    return SqlReportStore(session_factory)


@pytest.fixture
def audit_logger():
    return RecordingAuditLogger()


@pytest.fixture
def settings_provider():
    return StaticSettingsProvider()


@pytest.fixture
def coordinator(submission_store, report_store, settings_provider, audit_logger):
    return ReportCoordinator(
        submission_store=submission_store,
        report_store=report_store,
        engine=PlagiarismEngine(),
        settings_provider=settings_provider,
        audit_logger=audit_logger,
    )


@pytest.fixture
def add_submission(submission_store):
    def _add(student_id, code, assignment_id=7, minutes=0):
        return submission_store.create_submission(
            SubmissionCreate(
                student_id=student_id,
                assignment_id=assignment_id,
                code_content=code,
                submitted_at=BASE_TIME + dt.timedelta(minutes=minutes),
            )
        )

    return _add
