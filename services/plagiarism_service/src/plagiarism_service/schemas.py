import datetime as dt
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ReportStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class ReportMode(str, Enum):
    LATEST_ONLY = "latest_only"
    FULL_HISTORY = "full_history"
    STUDENT_TARGET = "student_target"


class MatchType(str, Enum):
    EXACT_MATCH = "EXACT_MATCH"
    STRUCTURAL_MATCH = "STRUCTURAL_MATCH"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class SubmissionCreate(BaseModel):
    student_id: int
    assignment_id: int
    code_content: str
    file_name: str = "main.py"
    submitted_at: dt.datetime | None = None


class SubmissionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: int
    assignment_id: int
    file_name: str
    code_content: str
    code_hash: str
    submitted_at: dt.datetime


class MatchRegion(BaseModel):
    submission1_line_start: int
    submission1_line_end: int
    submission2_line_start: int
    submission2_line_end: int
    match_type: MatchType = MatchType.EXACT_MATCH


class HighlightData(BaseModel):
    matches: list[MatchRegion] = Field(default_factory=list)


class AIAnalysis(BaseModel):
    similarity_reason: str
    is_common_code: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    explanation: str = ""


class SimilarityDraft(BaseModel):
    """Результат сравнения одной пары, ещё не привязанный к отчёту."""

    submission1_id: int
    submission2_id: int
    similarity_score: float
    jaccard_score: float
    lcs_score: float
    highlight_data: HighlightData = Field(default_factory=HighlightData)
    ai_analysis: AIAnalysis | None = None
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.utcnow())

    def pair(self) -> frozenset[int]:
        return frozenset((self.submission1_id, self.submission2_id))


class SimilarityOut(SimilarityDraft):
    model_config = ConfigDict(from_attributes=True)

    id: int
    report_id: int


class ReportCreate(BaseModel):
    assignment_id: int
    executor_id: int
    mode: ReportMode
    total_submissions: int
    total_pairs: int


class ReportSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    assignment_id: int
    executor_id: int
    mode: ReportMode
    status: ReportStatus
    total_submissions: int
    total_pairs: int
    created_at: dt.datetime
    completed_at: dt.datetime | None = None


class GenerateReportRequest(BaseModel):
    mode: ReportMode = ReportMode.LATEST_ONLY
    executor_id: int
    student_id: int | None = None


class ReportEvent(BaseModel):
    kind: Literal["started", "progress", "completed", "failed"]
    progress: float | None = None
    report: ReportSummary | None = None
    error_code: str | None = None
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.kind in ("completed", "failed")


class AlgorithmSettings(BaseModel):
    similarity_threshold: int = Field(default=60, ge=0, le=100)
    fast_compare_mode: bool = False
