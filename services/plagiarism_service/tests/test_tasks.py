import threading
import time

import pytest

from plagiarism_service.errors import GenerationCancelled, GenerationInProgress, InsufficientSubmissions, Result
from plagiarism_service.schemas import ReportMode, ReportStatus
from plagiarism_service.tasks import GenerationRunner

from samples import BUBBLE_SORT, FACTORIAL, FIZZBUZZ

WAIT = 10


class BlockingCoordinator:
    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def generate_report(self, mode, assignment_id, executor_id, student_id=None, progress_callback=None, cancel_token=None):
        self.calls += 1
        self.started.set()
        self.release.wait(WAIT)
        return Result.failure(InsufficientSubmissions("nothing to compare"))


class CrashingCoordinator:
    def generate_report(self, mode, assignment_id, executor_id, student_id=None, progress_callback=None, cancel_token=None):
        raise ZeroDivisionError("boom")


class LoopingCoordinator:
    def __init__(self):
        self.started = threading.Event()

    def generate_report(self, mode, assignment_id, executor_id, student_id=None, progress_callback=None, cancel_token=None):
        self.started.set()
        try:
            while True:
                cancel_token.check()
                time.sleep(0.01)
        except GenerationCancelled as e:
            return Result.failure(e)


@pytest.fixture
def make_runner():
    runners = []

    def _make(coordinator, **kwargs):
        runner = GenerationRunner(coordinator, **kwargs)
        runners.append(runner)
        return runner

    yield _make
    for runner in runners:
        runner.shutdown(wait=False)


def test_event_sequence_for_successful_generation(coordinator, add_submission, make_runner):
    for student, code in enumerate([BUBBLE_SORT, FIZZBUZZ, FACTORIAL], start=1):
        add_submission(student, code)
    handle = make_runner(coordinator).submit(ReportMode.LATEST_ONLY, 7, executor_id=100)

    events = list(handle.events())

    assert events[0].kind == "started"
    assert events[-1].kind == "completed"
    assert [e.kind for e in events[1:-1]] == ["progress"] * (len(events) - 2)
    progress = [e.progress for e in events[1:]]
    assert progress == sorted(progress)
    assert events[-1].progress == 1.0
    assert events[-1].report.status == ReportStatus.COMPLETED
    assert handle.result(WAIT).unwrap().total_pairs == 3
    assert handle.done


def test_failed_generation_ends_with_failed_event(coordinator, add_submission, make_runner):
    add_submission(1, BUBBLE_SORT)
    handle = make_runner(coordinator).submit(ReportMode.LATEST_ONLY, 7, executor_id=100)

    events = list(handle.events())

    assert [e.kind for e in events] == ["started", "failed"]
    assert events[-1].error_code == "insufficient_submissions"
    assert isinstance(handle.result(WAIT).error, InsufficientSubmissions)


def test_second_generation_for_same_assignment_is_rejected(make_runner):
    stub = BlockingCoordinator()
    runner = make_runner(stub)

    first = runner.submit(ReportMode.LATEST_ONLY, 7, executor_id=100)
    assert stub.started.wait(WAIT)
    second = runner.submit(ReportMode.FULL_HISTORY, 7, executor_id=101)
    other_assignment = runner.submit(ReportMode.LATEST_ONLY, 8, executor_id=100)

    assert second.done
    assert isinstance(second.result(0).error, GenerationInProgress)
    assert [e.kind for e in second.events()] == ["started", "failed"]

    stub.release.set()
    assert isinstance(first.result(WAIT).error, InsufficientSubmissions)
    assert isinstance(other_assignment.result(WAIT).error, InsufficientSubmissions)

    # после завершения задание снова свободно
    third = runner.submit(ReportMode.LATEST_ONLY, 7, executor_id=100)
    assert isinstance(third.result(WAIT).error, InsufficientSubmissions)
    assert stub.calls == 3


def test_unexpected_crash_still_produces_terminal_event(make_runner):
    handle = make_runner(CrashingCoordinator()).submit(ReportMode.LATEST_ONLY, 7, executor_id=100)

    events = list(handle.events())

    assert events[-1].kind == "failed"
    assert "boom" in events[-1].error
    assert not handle.result(WAIT).ok


def test_cancel_stops_running_generation(make_runner):
    stub = LoopingCoordinator()
    handle = make_runner(stub).submit(ReportMode.LATEST_ONLY, 7, executor_id=100)
    assert stub.started.wait(WAIT)

    handle.cancel()

    result = handle.result(WAIT)
    assert isinstance(result.error, GenerationCancelled)
    assert list(handle.events())[-1].error_code == "cancelled"


def test_timeout_cancels_generation(make_runner):
    handle = make_runner(LoopingCoordinator(), timeout=0.05).submit(ReportMode.LATEST_ONLY, 7, executor_id=100)

    assert handle.result(WAIT).error.code == "timed_out"


def test_result_times_out_while_running(make_runner):
    stub = BlockingCoordinator()
    handle = make_runner(stub).submit(ReportMode.LATEST_ONLY, 7, executor_id=100)
    assert stub.started.wait(WAIT)

    with pytest.raises(TimeoutError):
        handle.result(0.01)
    stub.release.set()
    handle.result(WAIT)


class QueueingCoordinator:
    """Задание 1 держит единственный поток пула, задание 2 ждёт в очереди."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def generate_report(self, mode, assignment_id, executor_id, student_id=None, progress_callback=None, cancel_token=None):
        if assignment_id == 1:
            self.started.set()
            self.release.wait(WAIT)
        try:
            cancel_token.check()
        except GenerationCancelled as e:
            return Result.failure(e)
        return Result.failure(InsufficientSubmissions("nothing to compare"))


def test_time_spent_in_queue_does_not_count_towards_timeout(make_runner):
    stub = QueueingCoordinator()
    runner = make_runner(stub, max_workers=1, timeout=0.1)

    first = runner.submit(ReportMode.LATEST_ONLY, 1, executor_id=100)
    assert stub.started.wait(WAIT)
    queued = runner.submit(ReportMode.LATEST_ONLY, 2, executor_id=100)
    time.sleep(0.3)
    stub.release.set()

    assert first.result(WAIT).error.code == "timed_out"
    assert isinstance(queued.result(WAIT).error, InsufficientSubmissions)
