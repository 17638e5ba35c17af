import datetime as dt

import pytest

from plagiarism_service.errors import PersistenceFailure
from plagiarism_service.schemas import (
    HighlightData,
    MatchRegion,
    ReportCreate,
    ReportMode,
    ReportStatus,
    ReportSummary,
    SimilarityDraft,
)

from fakes import BASE_TIME
from samples import BUBBLE_SORT


def _pending_report(report_store, assignment_id=7):
    return report_store.create_report(
        ReportCreate(
            assignment_id=assignment_id,
            executor_id=100,
            mode=ReportMode.LATEST_ONLY,
            total_submissions=3,
            total_pairs=3,
        )
    )


def _draft(first=1, second=2, score=87.5):
    return SimilarityDraft(
        submission1_id=first,
        submission2_id=second,
        similarity_score=score,
        jaccard_score=80.0,
        lcs_score=92.5,
        highlight_data=HighlightData(
            matches=[MatchRegion(submission1_line_start=0, submission1_line_end=3,
                                 submission2_line_start=1, submission2_line_end=4)]
        ),
    )


def test_new_report_is_pending(report_store):
    report = _pending_report(report_store)

    assert report.status == ReportStatus.PENDING
    assert report.completed_at is None
    assert report_store.get_report_by_id(report.id) == report


def test_update_report_roundtrip(report_store):
    report = _pending_report(report_store)
    finished = report.model_copy(
        update={"status": ReportStatus.COMPLETED, "completed_at": BASE_TIME, "total_pairs": 2}
    )

    updated = report_store.update_report(finished)

    assert updated.status == ReportStatus.COMPLETED
    assert updated.completed_at == BASE_TIME
    assert updated.total_pairs == 2
    assert report_store.get_report_by_id(report.id) == updated


def test_update_missing_report(report_store):
    ghost = ReportSummary(
        id=404,
        assignment_id=7,
        executor_id=100,
        mode=ReportMode.LATEST_ONLY,
        status=ReportStatus.COMPLETED,
        total_submissions=2,
        total_pairs=1,
        created_at=BASE_TIME,
    )
    with pytest.raises(PersistenceFailure):
        report_store.update_report(ghost)


def test_create_similarity_on_existing_report(report_store):
    report = _pending_report(report_store)

    stored = report_store.create_similarity(report.id, _draft())

    assert stored.report_id == report.id
    assert stored.pair() == frozenset((1, 2))
    assert stored.highlight_data.matches[0].submission2_line_end == 4
    assert report_store.get_similarity_by_id(stored.id) == stored
    assert report_store.get_similarities_by_report(report.id) == [stored]


def test_create_similarity_on_missing_report(report_store):
    with pytest.raises(PersistenceFailure):
        report_store.create_similarity(404, _draft())


def test_complete_report_writes_batch_and_flips_status(report_store):
    report = _pending_report(report_store)

    completed = report_store.complete_report(report.id, [_draft(1, 2), _draft(1, 3, 40.0)], 2)

    assert completed.status == ReportStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.total_pairs == 2
    assert [s.similarity_score for s in report_store.get_similarities_by_report(report.id)] == [87.5, 40.0]


def test_complete_missing_report_writes_nothing(report_store):
    with pytest.raises(PersistenceFailure):
        report_store.complete_report(404, [_draft()], 1)
    assert report_store.get_similarities_by_report(404) == []


def test_delete_report_removes_similarities(report_store):
    report = _pending_report(report_store)
    stored = report_store.create_similarity(report.id, _draft())

    report_store.delete_report(report.id)

    assert report_store.get_report_by_id(report.id) is None
    assert report_store.get_similarity_by_id(stored.id) is None
    report_store.delete_report(report.id)


def test_submissions_are_ordered_and_hashed(submission_store, add_submission):
    later = add_submission(1, BUBBLE_SORT, minutes=10)
    earlier = add_submission(2, BUBBLE_SORT, minutes=0)
    add_submission(3, BUBBLE_SORT, assignment_id=8)

    submissions = submission_store.get_all_submissions_by_assignment(7)

    assert [s.id for s in submissions] == [earlier.id, later.id]
    assert later.code_hash == earlier.code_hash
    assert submission_store.get_submission_by_id(later.id).submitted_at == BASE_TIME + dt.timedelta(minutes=10)
    assert submission_store.get_submission_by_id(999) is None
