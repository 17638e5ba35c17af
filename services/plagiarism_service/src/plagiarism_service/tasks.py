from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator

from .coordinator import ReportCoordinator
from .engine import CancellationToken
from .errors import GenerationInProgress, PlagiarismError, Result
from .schemas import ReportEvent, ReportMode, ReportSummary

logger = logging.getLogger(__name__)


class GenerationHandle:
    """Запущенная генерация отчёта: поток событий, отмена и итоговый результат.

    events() отдаёт "started", затем "progress", затем ровно одно
    терминальное событие "completed" или "failed".
    """

    def __init__(self, assignment_id: int, cancel_token: CancellationToken):
        self.assignment_id = assignment_id
        self._cancel_token = cancel_token
        self._events: queue.Queue[ReportEvent] = queue.Queue()
        self._done = threading.Event()
        self._result: Result[ReportSummary] | None = None
        self._publish(ReportEvent(kind="started"))

    def cancel(self) -> None:
        self._cancel_token.cancel()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def events(self) -> Iterator[ReportEvent]:
        while True:
            event = self._events.get()
            yield event
            if event.terminal:
                return

    def result(self, timeout: float | None = None) -> Result[ReportSummary]:
        if not self._done.wait(timeout):
            raise TimeoutError(f"report generation for assignment {self.assignment_id} is still running")
        return self._result

    def _publish(self, event: ReportEvent) -> None:
        self._events.put(event)

    def _progress(self, value: float) -> None:
        self._publish(ReportEvent(kind="progress", progress=value))

    def _finish(self, result: Result[ReportSummary]) -> None:
        self._result = result
        if result.ok:
            self._publish(ReportEvent(kind="completed", progress=1.0, report=result.value))
        else:
            self._publish(ReportEvent(kind="failed", error_code=result.error.code, error=str(result.error)))
        self._done.set()


class GenerationRunner:
    """Фоновый запуск генерации отчётов.

    Не больше одной генерации на задание одновременно: повторный запрос,
    пока первая ещё идёт, сразу завершается ошибкой GenerationInProgress.
    """

    def __init__(self, coordinator: ReportCoordinator, max_workers: int = 2, timeout: float | None = None):
        self.coordinator = coordinator
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="report-gen")
        self._lock = threading.Lock()
        self._in_flight: set[int] = set()

    def submit(
        self,
        mode: ReportMode,
        assignment_id: int,
        executor_id: int,
        student_id: int | None = None,
    ) -> GenerationHandle:
        # дедлайн запускается в _run: время в очереди пула не считается
        handle = GenerationHandle(assignment_id, CancellationToken())

        with self._lock:
            busy = assignment_id in self._in_flight
            if not busy:
                self._in_flight.add(assignment_id)
        if busy:
            handle._finish(Result.failure(
                GenerationInProgress(f"A report for assignment {assignment_id} is already being generated")
            ))
            return handle

        self._executor.submit(self._run, handle, mode, assignment_id, executor_id, student_id)
        return handle

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run(
        self,
        handle: GenerationHandle,
        mode: ReportMode,
        assignment_id: int,
        executor_id: int,
        student_id: int | None,
    ) -> None:
        handle._cancel_token.arm(self.timeout)
        try:
            result = self.coordinator.generate_report(
                mode, assignment_id, executor_id, student_id,
                progress_callback=handle._progress,
                cancel_token=handle._cancel_token,
            )
        except Exception as e:
            # вызывающий всегда получает терминальное событие
            logger.exception("Report generation for assignment %s crashed", assignment_id)
            result = Result.failure(PlagiarismError(f"Unexpected error: {e}"))
        finally:
            with self._lock:
                self._in_flight.discard(assignment_id)
        handle._finish(result)
