import datetime as dt
from decimal import Decimal
from datetime import date, datetime
from typing import Optional, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ulasis.domain.periods import PeriodType


def _decimal_to_float(v):
    """Numeric columns come back as Decimal; the engine works in floats."""
    if isinstance(v, Decimal):
        return float(v)
    return v


# REPOSITORY RECORDS
# Plain data crossing the repository boundary. Built from ORM rows with
# model_validate(obj) or from dicts by the in-memory fakes.

class AnswerRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    response_id: int
    question_id: int
    answer_value: Optional[str] = None
    rating_score: Optional[float] = None
    selected_options: List[str] = Field(default_factory=list)
    is_skipped: bool = False
    validation_status: Literal['valid', 'invalid', 'pending'] = 'valid'
    validation_errors: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @field_validator('rating_score', mode='before')
    @classmethod
    def coerce_rating(cls, v):
        return _decimal_to_float(v)

    @field_validator('selected_options', 'validation_errors', mode='before')
    @classmethod
    def none_to_list(cls, v):
        return v or []


class QuestionnaireRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    category_mapping: Dict[str, dict] = Field(default_factory=dict)
    is_active: bool = True

    @field_validator('category_mapping', mode='before')
    @classmethod
    def none_to_dict(cls, v):
        return v or {}


class AnswerCounts(BaseModel):
    """Grouped counters for one question."""
    total: int = 0
    skipped: int = 0
    valid: int = 0


class ResponseTotals(BaseModel):
    total: int = 0
    complete: int = 0
    average_completion_time: Optional[float] = None
    average_progress: Optional[float] = None

    @field_validator('average_completion_time', 'average_progress', mode='before')
    @classmethod
    def coerce_numeric(cls, v):
        return _decimal_to_float(v)


class ResponseRow(BaseModel):
    id: int
    response_date: datetime
    is_complete: bool = False


class RatedAnswerRow(BaseModel):
    """A valid, non-skipped, rated answer with its area already resolved."""
    response_id: int
    response_date: datetime
    area: str
    rating_score: float

    @field_validator('rating_score', mode='before')
    @classmethod
    def coerce_rating(cls, v):
        return _decimal_to_float(v)


class QRCodeActivity(BaseModel):
    qr_code_id: int
    location_tag: Optional[str] = None
    scan_count: int = 0
    responses: int = 0


# MATERIALIZED ANALYTICS ROWS
# Written through upserts and read back for the dashboard.

class BreakdownRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    questionnaire_id: int
    period_type: PeriodType
    period_date: date
    area: str
    avg_rating: Optional[float] = None
    responses: int = 0
    trend: Optional[float] = None
    status: Literal['Good', 'Monitor', 'Urgent'] = 'Monitor'

    @field_validator('avg_rating', 'trend', mode='before')
    @classmethod
    def coerce_numeric(cls, v):
        return _decimal_to_float(v)


class TrendRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    questionnaire_id: int
    period_type: PeriodType
    period_date: date
    date: dt.date
    avg_rating: Optional[float] = None
    response_rate: Optional[float] = None
    trend_value: Optional[float] = None

    @field_validator('avg_rating', 'response_rate', 'trend_value', mode='before')
    @classmethod
    def coerce_numeric(cls, v):
        return _decimal_to_float(v)


class KPIRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    questionnaire_id: int
    period_type: PeriodType
    period_date: date
    total_responses: int = 0
    avg_rating: Optional[float] = None
    response_rate: Optional[float] = None
    positive_sentiment: Optional[float] = None

    @field_validator('avg_rating', 'response_rate', 'positive_sentiment', mode='before')
    @classmethod
    def coerce_numeric(cls, v):
        return _decimal_to_float(v)


# SUBMISSION SCHEMAS
# Validate raw payloads coming from the public questionnaire form.

class AnswerSubmission(BaseModel):
    question_id: int
    answer_value: Optional[str] = None
    rating_score: Optional[float] = None
    selected_options: List[str] = Field(default_factory=list)
    is_skipped: bool = False
    skip_reason: Optional[str] = Field(None, max_length=255)

    @field_validator('answer_value', 'skip_reason', mode='before')
    @classmethod
    def empty_str_to_none(cls, v):
        """Converts blank strings to None so 'required' checks see a missing value."""
        if isinstance(v, str) and v.strip() == '':
            return None
        return v


class ResponseSubmission(BaseModel):
    qr_code_id: Optional[int] = None
    device_fingerprint: Optional[str] = Field(None, max_length=255)
    completion_time: Optional[int] = Field(None, ge=0)
    response_date: Optional[datetime] = None
    answers: List[AnswerSubmission] = Field(default_factory=list)


# API OUTPUT SCHEMAS (DTOs)

class AnswerDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    response_id: int
    question_id: int
    rating_score: Optional[float] = None
    is_skipped: bool
    validation_status: str
    validation_errors: List[str] = Field(default_factory=list)

    @field_validator('rating_score', mode='before')
    @classmethod
    def coerce_rating(cls, v):
        return _decimal_to_float(v)

    @field_validator('validation_errors', mode='before')
    @classmethod
    def none_to_list(cls, v):
        return v or []


class ResponseDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    questionnaire_id: int
    qr_code_id: Optional[int] = None
    response_date: datetime
    is_complete: bool
    progress_percentage: float
    completion_time: Optional[int] = None

    @field_validator('progress_percentage', mode='before')
    @classmethod
    def coerce_progress(cls, v):
        return _decimal_to_float(v)


# STATISTICS SCHEMAS

class AnswerStatistics(BaseModel):
    """
    Answer-level statistics for one question.
    degraded_metrics names every metric that fell back to a neutral value
    because it could not be computed, so a 0 average with an empty list means
    "no qualifying answers" while a 0 with ['average_rating'] means "failed".
    """
    total_answers: int = 0
    skipped_answers: int = 0
    valid_answers: int = 0
    invalid_answers: int = 0
    skip_rate: int = 0
    valid_rate: int = 0
    average_rating: float = 0.0
    degraded_metrics: List[str] = Field(default_factory=list)

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded_metrics)


class ResponseStatistics(BaseModel):
    total_responses: int = 0
    complete_responses: int = 0
    incomplete_responses: int = 0
    completion_rate: int = 0
    average_completion_time: int = 0
    average_progress: float = 0.0


class AnswerDistribution(BaseModel):
    """Per-score counts of non-skipped ratings and per-option counts of selections."""
    ratings: Dict[int, int] = Field(default_factory=dict)
    choices: Dict[str, int] = Field(default_factory=dict)


class QuestionnaireKPIs(BaseModel):
    average_rating: float = 0.0
    response_quality_score: float = 0.0
    engagement_score: int = 0
    total_responses: int = 0
    completion_rate: int = 0
    best_area: Optional[str] = None
    worst_area: Optional[str] = None
    area_count: int = 0


class QuestionnaireStatistics(BaseModel):
    questionnaire_id: int
    responses: ResponseStatistics
    questions: Dict[int, AnswerStatistics]
    distributions: Dict[int, AnswerDistribution] = Field(default_factory=dict)
    qr_codes: List[QRCodeActivity] = Field(default_factory=list)
    kpis: QuestionnaireKPIs = Field(default_factory=QuestionnaireKPIs)


# ANALYTICS SCHEMAS

class BubbleCategory(BaseModel):
    name: str
    rating: float
    response_count: int
    response_rate: float = Field(..., ge=0, le=100)
    color: Literal['green', 'yellow', 'red']
    trend: Literal['improving', 'declining', 'stable']


class PeriodWindow(BaseModel):
    start: datetime
    end: datetime
    total_responses: int = 0
    avg_rating: Optional[float] = None


class PeriodComparison(BaseModel):
    current_period: PeriodWindow
    previous_period: PeriodWindow
    change_percentage: Optional[float] = None
    overall_trend: Literal['improving', 'declining', 'stable'] = 'stable'


class BubbleAnalytics(BaseModel):
    """Payload consumed by the dashboard's bubble chart."""
    questionnaire_id: int
    categories: List[BubbleCategory]
    total_responses: int
    response_rate: float
    period_comparison: PeriodComparison
    generated_at: datetime


class DashboardData(BaseModel):
    kpi: Optional[KPIRow] = None
    trends: List[TrendRow]
    breakdown: List[BreakdownRow]


class TableCounts(BaseModel):
    created: int = 0
    updated: int = 0


class RefreshResult(BaseModel):
    questionnaire_id: int
    kpis: TableCounts = Field(default_factory=TableCounts)
    trends: TableCounts = Field(default_factory=TableCounts)
    breakdown: TableCounts = Field(default_factory=TableCounts)


# API QUERY SCHEMAS

class BubbleQuery(BaseModel):
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    comparison_period: Literal['week', 'custom'] = 'week'
    compare_from: Optional[datetime] = None
    compare_to: Optional[datetime] = None


class DashboardQuery(BaseModel):
    period_type: PeriodType = PeriodType.WEEK


class RefreshRequest(BaseModel):
    period_types: Optional[List[PeriodType]] = None
    days: Optional[int] = Field(None, ge=1, le=3660)
