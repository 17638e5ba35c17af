import logging

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import sessionmaker

from .candidates import CandidateSelector
from .clients import analyze_pair, AIServiceError, AIServiceUnavailable
from .config import Settings, settings
from .coordinator import ReportCoordinator
from .db import SessionLocal, init_db
from .engine import PlagiarismEngine
from .errors import (
    GenerationCancelled,
    GenerationInProgress,
    InsufficientSubmissions,
    NoComparisonTarget,
    PersistenceFailure,
    PlagiarismError,
    Result,
)
from .schemas import (
    AIAnalysis,
    AlgorithmSettings,
    GenerateReportRequest,
    ReportSummary,
    SimilarityDraft,
    SimilarityOut,
    SubmissionCreate,
    SubmissionRecord,
)
from .scorer import SimilarityScorer
from .stores import ConfigSettingsProvider, SqlAuditLogger, SqlReportStore, SqlSubmissionStore
from .tasks import GenerationRunner

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Plagiarism Detection Service", version="1.0.0")


class Services:
    """Долгоживущие экземпляры сервисов, создаются один раз на старте."""

    def __init__(self, session_factory: sessionmaker, cfg: Settings):
        self.submissions = SqlSubmissionStore(session_factory)
        self.reports = SqlReportStore(session_factory)
        self.engine = PlagiarismEngine(
            scorer=SimilarityScorer(),
            selector=CandidateSelector(
                shingle_size=cfg.shingle_size,
                num_perm=cfg.minhash_permutations,
                bands=cfg.lsh_bands,
                min_submissions=cfg.fast_mode_min_submissions,
            ),
            score_floor=cfg.fast_mode_score_floor,
        )
        self.coordinator = ReportCoordinator(
            submission_store=self.submissions,
            report_store=self.reports,
            engine=self.engine,
            settings_provider=ConfigSettingsProvider(cfg),
            audit_logger=SqlAuditLogger(session_factory),
        )
        self.runner = GenerationRunner(
            self.coordinator,
            max_workers=cfg.generation_workers,
            timeout=cfg.generation_timeout_seconds,
        )


def build_services(session_factory: sessionmaker = SessionLocal, cfg: Settings = settings) -> Services:
    return Services(session_factory, cfg)


def get_services(request: Request) -> Services:
    return request.app.state.services


@app.on_event("startup")
def _startup():
    init_db()
    app.state.services = build_services()


@app.on_event("shutdown")
def _shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        services.runner.shutdown(wait=False)


_ERROR_STATUS = [
    (InsufficientSubmissions, 422),
    (NoComparisonTarget, 422),
    (GenerationInProgress, 409),
    (GenerationCancelled, 408),
    (PersistenceFailure, 503),
]


def _raise_for(error: PlagiarismError):
    status = next((code for cls, code in _ERROR_STATUS if isinstance(error, cls)), 500)
    raise HTTPException(status_code=status, detail={"code": error.code, "message": str(error)})


def _unwrap(result: Result):
    if not result.ok:
        _raise_for(result.error)
    return result.value


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/settings/algorithm", response_model=AlgorithmSettings)
def algorithm_settings(services: Services = Depends(get_services)):
    return services.coordinator.get_algorithm_settings()


@app.post("/submissions", response_model=SubmissionRecord)
def create_submission(req: SubmissionCreate, services: Services = Depends(get_services)):
    try:
        return services.submissions.create_submission(req)
    except PersistenceFailure as e:
        _raise_for(e)


@app.get("/submissions/{submission_id}", response_model=SubmissionRecord)
def get_submission(submission_id: int, services: Services = Depends(get_services)):
    try:
        submission = services.submissions.get_submission_by_id(submission_id)
    except PersistenceFailure as e:
        _raise_for(e)
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    return submission


@app.get("/assignments/{assignment_id}/submissions", response_model=list[SubmissionRecord])
def list_submissions(assignment_id: int, services: Services = Depends(get_services)):
    try:
        return services.submissions.get_all_submissions_by_assignment(assignment_id)
    except PersistenceFailure as e:
        _raise_for(e)


@app.post("/assignments/{assignment_id}/reports", response_model=ReportSummary)
def generate_report(assignment_id: int, req: GenerateReportRequest, services: Services = Depends(get_services)):
    handle = services.runner.submit(req.mode, assignment_id, req.executor_id, req.student_id)
    return _unwrap(handle.result())


@app.post("/assignments/{assignment_id}/reports/stream")
def generate_report_stream(assignment_id: int, req: GenerateReportRequest, services: Services = Depends(get_services)):
    """NDJSON: started, progress..., затем completed или failed."""
    handle = services.runner.submit(req.mode, assignment_id, req.executor_id, req.student_id)

    def lines():
        try:
            for event in handle.events():
                yield event.model_dump_json() + "\n"
        finally:
            # клиент отключился раньше времени
            if not handle.done:
                handle.cancel()

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@app.get("/assignments/{assignment_id}/reports", response_model=list[ReportSummary])
def list_reports(assignment_id: int, services: Services = Depends(get_services)):
    return _unwrap(services.coordinator.get_reports_by_assignment(assignment_id))


@app.get("/reports/{report_id}", response_model=ReportSummary)
def get_report(report_id: int, services: Services = Depends(get_services)):
    report = _unwrap(services.coordinator.get_report_by_id(report_id))
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


@app.get("/reports/{report_id}/similarities", response_model=list[SimilarityOut])
def list_similarities(report_id: int, services: Services = Depends(get_services)):
    if not _unwrap(services.coordinator.get_report_by_id(report_id)):
        raise HTTPException(status_code=404, detail="Report not found")
    return _unwrap(services.coordinator.get_similarities_by_report(report_id))


@app.get("/reports/{report_id}/high-similarity", response_model=list[SimilarityOut])
def high_similarity(report_id: int, threshold: float | None = None, services: Services = Depends(get_services)):
    if not _unwrap(services.coordinator.get_report_by_id(report_id)):
        raise HTTPException(status_code=404, detail="Report not found")
    return _unwrap(services.coordinator.get_high_similarity_pairs(report_id, threshold))


@app.post("/assignments/{assignment_id}/submissions/{submission_id}/compare", response_model=list[SimilarityDraft])
def compare_submission(
    assignment_id: int,
    submission_id: int,
    threshold: float | None = None,
    actor_id: int | None = None,
    services: Services = Depends(get_services),
):
    return _unwrap(services.coordinator.compare_new_submission(assignment_id, submission_id, threshold, actor_id))


@app.post("/similarities/{similarity_id}/ai-analysis", response_model=AIAnalysis)
async def ai_analysis(similarity_id: int, services: Services = Depends(get_services)):
    """Разбор пары через внешнюю LLM. Результат не сохраняется: Similarity неизменяема."""
    similarity = _unwrap(services.coordinator.get_similarity_by_id(similarity_id))
    if not similarity:
        raise HTTPException(status_code=404, detail="Similarity not found")

    try:
        first = services.submissions.get_submission_by_id(similarity.submission1_id)
        second = services.submissions.get_submission_by_id(similarity.submission2_id)
    except PersistenceFailure as e:
        _raise_for(e)
    if not first or not second:
        raise HTTPException(status_code=410, detail="Compared submissions are no longer available")

    try:
        return await analyze_pair(first.code_content, second.code_content, similarity.similarity_score)
    except AIServiceUnavailable as e:
        raise HTTPException(status_code=503, detail=f"AI service unavailable: {e}")
    except AIServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))


def run():
    import uvicorn

    uvicorn.run("plagiarism_service.main:app", host="0.0.0.0", port=settings.port)
