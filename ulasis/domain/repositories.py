"""
Storage contracts used by the analytics services.

Services only talk to these interfaces, so the aggregation logic can run over
the SQLAlchemy implementations in production and over in-memory fakes in
tests. Implementations must raise NotFoundError for unknown ids and wrap
driver failures in RepositoryError.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ulasis.domain.schemas import (
    AnswerRecord, AnswerCounts, QuestionnaireRecord, ResponseTotals, ResponseRow,
    RatedAnswerRow, QRCodeActivity, BreakdownRow, TrendRow, KPIRow
)
from ulasis.domain.periods import PeriodType


class AnswerRepository(ABC):

    @abstractmethod
    def find_answers_by_question(self, question_id: int, include_skipped: bool = False,
                                 only_valid: bool = False, date_from: Optional[datetime] = None,
                                 date_to: Optional[datetime] = None) -> List[AnswerRecord]:
        ...

    @abstractmethod
    def find_answers_by_question_ids(self, question_ids: Iterable[int], include_skipped: bool = False,
                                     only_valid: bool = False) -> List[AnswerRecord]:
        ...

    @abstractmethod
    def count_answers_by_question(self, question_ids: Iterable[int],
                                  include_skipped: bool = False) -> Dict[int, AnswerCounts]:
        """
        Grouped counters per question. Ids without answers may be missing.
        `valid` counts non-skipped valid answers unless include_skipped is True.
        """

    @abstractmethod
    def average_rating_by_question(self, question_ids: Iterable[int]) -> Dict[int, float]:
        """Mean rating over non-skipped, valid, rated answers. Ids without ratings may be missing."""

    @abstractmethod
    def list_question_ids(self, questionnaire_id: int) -> List[int]:
        ...


class ResponseRepository(ABC):

    @abstractmethod
    def get_questionnaire(self, questionnaire_id: int) -> QuestionnaireRecord:
        ...

    @abstractmethod
    def list_active_questionnaire_ids(self) -> List[int]:
        ...

    @abstractmethod
    def count_responses_by_questionnaire(self, questionnaire_id: int, date_from: Optional[datetime] = None,
                                         date_to: Optional[datetime] = None) -> int:
        """Responses with date_from <= response_date < date_to."""

    @abstractmethod
    def summarize_responses(self, questionnaire_id: int, date_from: Optional[datetime] = None,
                            date_to: Optional[datetime] = None) -> ResponseTotals:
        ...

    @abstractmethod
    def find_responses(self, questionnaire_id: int, start: datetime, end: datetime) -> List[ResponseRow]:
        ...

    @abstractmethod
    def find_rated_answers(self, questionnaire_id: int, start: Optional[datetime] = None,
                           end: Optional[datetime] = None, only_complete: bool = False) -> List[RatedAnswerRow]:
        """
        Valid, non-skipped, rated answers whose response falls in [start, end).
        A missing bound leaves that side open; only_complete drops unfinished responses.
        """

    @abstractmethod
    def count_scans(self, questionnaire_id: int) -> int:
        ...

    @abstractmethod
    def list_qr_code_activity(self, questionnaire_id: int, date_from: Optional[datetime] = None,
                              date_to: Optional[datetime] = None) -> List[QRCodeActivity]:
        """Every QR code of the questionnaire with the responses it produced in the window."""


class AnalyticsRepository(ABC):
    """Writes return True when a new row was created, False when one was updated."""

    @abstractmethod
    def upsert_breakdown(self, row: BreakdownRow) -> bool:
        ...

    @abstractmethod
    def upsert_trend(self, row: TrendRow) -> bool:
        ...

    @abstractmethod
    def upsert_kpi(self, row: KPIRow) -> bool:
        ...

    @abstractmethod
    def latest_kpi(self, questionnaire_id: int, period_type: PeriodType) -> Optional[KPIRow]:
        ...

    @abstractmethod
    def list_trends(self, questionnaire_id: int, period_type: PeriodType, limit: int = 30) -> List[TrendRow]:
        """Most recent `limit` points, returned oldest first."""

    @abstractmethod
    def list_breakdown(self, questionnaire_id: int, period_type: PeriodType, limit: int = 20) -> List[BreakdownRow]:
        """Rows of the latest period, best rated first."""

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...
