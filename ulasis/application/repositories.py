import functools
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, case, and_
from sqlalchemy.exc import SQLAlchemyError

from ulasis.extensions import db
from ulasis.domain.models import (
    Questionnaire, Question, QRCode, Response, Answer,
    AnalyticsBreakdown, AnalyticsTrend, AnalyticsKPI
)
from ulasis.domain.schemas import (
    AnswerRecord, AnswerCounts, QuestionnaireRecord, ResponseTotals, ResponseRow,
    RatedAnswerRow, QRCodeActivity, BreakdownRow, TrendRow, KPIRow
)
from ulasis.domain.repositories import AnswerRepository, ResponseRepository, AnalyticsRepository
from ulasis.domain.exceptions import NotFoundError, RepositoryError
from ulasis.domain.metrics import resolve_area
from ulasis.domain.periods import PeriodType
from ulasis.config import analytics_settings

logger = logging.getLogger(__name__)


def storage_errors(fn):
    """Re-raises driver failures as RepositoryError."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"DB: {fn.__name__} failed: {e}")
            raise RepositoryError(f"{fn.__name__} failed") from e
    return wrapper


def _date_window(query, column, date_from: Optional[datetime], date_to: Optional[datetime]):
    if date_from is not None:
        query = query.filter(column >= date_from)
    if date_to is not None:
        query = query.filter(column < date_to)
    return query


class SqlAlchemyAnswerRepository(AnswerRepository):
    """Answer reads backed by the shared Flask-SQLAlchemy session."""

    @staticmethod
    def _answer_query(include_skipped: bool, only_valid: bool):
        query = Answer.query.filter(Answer.deleted_at.is_(None))
        if not include_skipped:
            query = query.filter(Answer.is_skipped.is_(False))
        if only_valid:
            query = query.filter(Answer.validation_status == 'valid')
        return query

    @storage_errors
    def find_answers_by_question(self, question_id, include_skipped=False, only_valid=False,
                                 date_from=None, date_to=None) -> List[AnswerRecord]:
        query = self._answer_query(include_skipped, only_valid).filter(Answer.question_id == question_id)
        query = _date_window(query, Answer.created_at, date_from, date_to)
        return [AnswerRecord.model_validate(a) for a in query.order_by(Answer.created_at.desc()).all()]

    @storage_errors
    def find_answers_by_question_ids(self, question_ids, include_skipped=False,
                                     only_valid=False) -> List[AnswerRecord]:
        ids = list(question_ids)
        if not ids:
            return []
        query = self._answer_query(include_skipped, only_valid).filter(Answer.question_id.in_(ids))
        return [AnswerRecord.model_validate(a) for a in query.order_by(Answer.id).all()]

    @storage_errors
    def count_answers_by_question(self, question_ids: Iterable[int],
                                  include_skipped: bool = False) -> Dict[int, AnswerCounts]:
        ids = list(question_ids)
        if not ids:
            return {}

        valid_condition = Answer.validation_status == 'valid'
        if not include_skipped:
            valid_condition = and_(valid_condition, Answer.is_skipped.is_(False))

        # Single grouped pass instead of one query per question
        rows = db.session.query(
            Answer.question_id,
            func.count(Answer.id).label('total'),
            func.sum(case((Answer.is_skipped.is_(True), 1), else_=0)).label('skipped'),
            func.sum(case((valid_condition, 1), else_=0)).label('valid')
        ).filter(
            Answer.question_id.in_(ids),
            Answer.deleted_at.is_(None)
        ).group_by(Answer.question_id).all()

        return {
            row.question_id: AnswerCounts(
                total=row.total or 0,
                skipped=row.skipped or 0,
                valid=row.valid or 0
            )
            for row in rows
        }

    @storage_errors
    def average_rating_by_question(self, question_ids: Iterable[int]) -> Dict[int, float]:
        ids = list(question_ids)
        if not ids:
            return {}

        rows = db.session.query(
            Answer.question_id,
            func.avg(Answer.rating_score).label('avg_rating')
        ).filter(
            Answer.question_id.in_(ids),
            Answer.deleted_at.is_(None),
            Answer.is_skipped.is_(False),
            Answer.validation_status == 'valid',
            Answer.rating_score.isnot(None)
        ).group_by(Answer.question_id).all()

        return {row.question_id: float(row.avg_rating) for row in rows if row.avg_rating is not None}

    @storage_errors
    def list_question_ids(self, questionnaire_id: int) -> List[int]:
        rows = db.session.query(Question.id).filter(
            Question.questionnaire_id == questionnaire_id,
            Question.deleted_at.is_(None)
        ).order_by(Question.order_index, Question.id).all()
        return [r.id for r in rows]


class SqlAlchemyResponseRepository(ResponseRepository):

    @storage_errors
    def get_questionnaire(self, questionnaire_id: int) -> QuestionnaireRecord:
        questionnaire = db.session.get(Questionnaire, questionnaire_id)
        if questionnaire is None or questionnaire.deleted_at is not None:
            raise NotFoundError('Questionnaire', questionnaire_id)
        return QuestionnaireRecord.model_validate(questionnaire)

    @storage_errors
    def list_active_questionnaire_ids(self) -> List[int]:
        rows = db.session.query(Questionnaire.id).filter(
            Questionnaire.is_active.is_(True),
            Questionnaire.deleted_at.is_(None)
        ).order_by(Questionnaire.id).all()
        return [r.id for r in rows]

    @staticmethod
    def _response_query(questionnaire_id, date_from=None, date_to=None):
        query = Response.query.filter(
            Response.questionnaire_id == questionnaire_id,
            Response.deleted_at.is_(None)
        )
        return _date_window(query, Response.response_date, date_from, date_to)

    @storage_errors
    def count_responses_by_questionnaire(self, questionnaire_id, date_from=None, date_to=None) -> int:
        return self._response_query(questionnaire_id, date_from, date_to).count()

    @storage_errors
    def summarize_responses(self, questionnaire_id, date_from=None, date_to=None) -> ResponseTotals:
        query = self._response_query(questionnaire_id, date_from, date_to)
        stats = query.with_entities(
            func.count(Response.id).label('total'),
            func.sum(case((Response.is_complete.is_(True), 1), else_=0)).label('complete'),
            # Completion time only means something for finished responses
            func.avg(case((Response.is_complete.is_(True), Response.completion_time))).label('avg_time'),
            func.avg(Response.progress_percentage).label('avg_progress')
        ).first()

        if not stats or not stats.total:
            return ResponseTotals()

        return ResponseTotals(
            total=stats.total,
            complete=stats.complete or 0,
            average_completion_time=stats.avg_time,
            average_progress=stats.avg_progress
        )

    @storage_errors
    def find_responses(self, questionnaire_id, start, end) -> List[ResponseRow]:
        rows = self._response_query(questionnaire_id, start, end).with_entities(
            Response.id, Response.response_date, Response.is_complete
        ).order_by(Response.response_date).all()
        return [ResponseRow(id=r.id, response_date=r.response_date, is_complete=r.is_complete) for r in rows]

    @storage_errors
    def find_rated_answers(self, questionnaire_id, start=None, end=None,
                           only_complete=False) -> List[RatedAnswerRow]:
        questionnaire = self.get_questionnaire(questionnaire_id)

        query = db.session.query(
            Answer.response_id,
            Response.response_date,
            Question.category,
            Answer.rating_score
        ).join(Response, Answer.response_id == Response.id) \
            .join(Question, Answer.question_id == Question.id) \
            .filter(
                Response.questionnaire_id == questionnaire_id,
                Question.questionnaire_id == questionnaire_id,
                Response.deleted_at.is_(None),
                Answer.deleted_at.is_(None),
                Answer.is_skipped.is_(False),
                Answer.validation_status == 'valid',
                Answer.rating_score.isnot(None)
            )
        if only_complete:
            query = query.filter(Response.is_complete.is_(True))
        rows = _date_window(query, Response.response_date, start, end).all()

        return [
            RatedAnswerRow(
                response_id=row.response_id,
                response_date=row.response_date,
                area=resolve_area(row.category, questionnaire.category_mapping,
                                  analytics_settings.uncategorized_area),
                rating_score=row.rating_score
            )
            for row in rows
        ]

    @storage_errors
    def count_scans(self, questionnaire_id) -> int:
        total = db.session.query(func.coalesce(func.sum(QRCode.scan_count), 0)).filter(
            QRCode.questionnaire_id == questionnaire_id,
            QRCode.is_active.is_(True)
        ).scalar()
        return int(total or 0)

    @storage_errors
    def list_qr_code_activity(self, questionnaire_id, date_from=None, date_to=None) -> List[QRCodeActivity]:
        # Window and soft-delete conditions sit in the join so idle codes still show up
        join_condition = and_(Response.qr_code_id == QRCode.id, Response.deleted_at.is_(None))
        if date_from is not None:
            join_condition = and_(join_condition, Response.response_date >= date_from)
        if date_to is not None:
            join_condition = and_(join_condition, Response.response_date < date_to)

        rows = db.session.query(
            QRCode.id,
            QRCode.location_tag,
            QRCode.scan_count,
            func.count(Response.id).label('responses')
        ).outerjoin(Response, join_condition) \
            .filter(QRCode.questionnaire_id == questionnaire_id) \
            .group_by(QRCode.id, QRCode.location_tag, QRCode.scan_count) \
            .order_by(QRCode.id).all()

        return [
            QRCodeActivity(qr_code_id=row.id, location_tag=row.location_tag,
                           scan_count=row.scan_count or 0, responses=row.responses)
            for row in rows
        ]


class SqlAlchemyAnalyticsRepository(AnalyticsRepository):
    """
    Materialized analytics tables.
    Writes are single INSERT .. ON CONFLICT / ON DUPLICATE KEY statements keyed by
    each table's composite unique index, so concurrent refreshes never duplicate rows.
    """

    BREAKDOWN_KEY = ('questionnaire_id', 'period_type', 'period_date', 'area')
    TREND_KEY = ('questionnaire_id', 'period_type', 'period_date', 'date')
    KPI_KEY = ('questionnaire_id', 'period_type', 'period_date')

    @staticmethod
    def _insert_for_dialect(table):
        dialect = db.session.get_bind().dialect.name
        if dialect == 'sqlite':
            from sqlalchemy.dialects.sqlite import insert
        elif dialect == 'postgresql':
            from sqlalchemy.dialects.postgresql import insert
        elif dialect in ('mysql', 'mariadb'):
            from sqlalchemy.dialects.mysql import insert
        else:
            raise RepositoryError(f"Upsert not supported for dialect '{dialect}'")
        return dialect, insert(table)

    def _upsert(self, model, values: dict, key_columns: tuple) -> bool:
        values = dict(values)
        values['period_type'] = PeriodType(values['period_type']).value
        key = {col: values[col] for col in key_columns}

        # Only feeds the created/updated report; correctness rests on the upsert itself
        existed = db.session.query(model.id).filter_by(**key).first() is not None

        now = datetime.utcnow()
        dialect, stmt = self._insert_for_dialect(model.__table__)
        stmt = stmt.values(created_at=now, updated_at=now, **values)
        update_columns = [c for c in values if c not in key_columns]

        if dialect in ('mysql', 'mariadb'):
            changes = {c: stmt.inserted[c] for c in update_columns}
            stmt = stmt.on_duplicate_key_update(updated_at=now, **changes)
        else:
            changes = {c: stmt.excluded[c] for c in update_columns}
            changes['updated_at'] = now
            stmt = stmt.on_conflict_do_update(index_elements=list(key_columns), set_=changes)

        db.session.execute(stmt)
        return not existed

    @storage_errors
    def upsert_breakdown(self, row: BreakdownRow) -> bool:
        return self._upsert(AnalyticsBreakdown, row.model_dump(), self.BREAKDOWN_KEY)

    @storage_errors
    def upsert_trend(self, row: TrendRow) -> bool:
        return self._upsert(AnalyticsTrend, row.model_dump(), self.TREND_KEY)

    @storage_errors
    def upsert_kpi(self, row: KPIRow) -> bool:
        return self._upsert(AnalyticsKPI, row.model_dump(), self.KPI_KEY)

    @storage_errors
    def latest_kpi(self, questionnaire_id, period_type) -> Optional[KPIRow]:
        kpi = AnalyticsKPI.query.filter_by(
            questionnaire_id=questionnaire_id,
            period_type=PeriodType(period_type).value
        ).order_by(AnalyticsKPI.period_date.desc()).first()
        return KPIRow.model_validate(kpi) if kpi else None

    @storage_errors
    def list_trends(self, questionnaire_id, period_type, limit=30) -> List[TrendRow]:
        rows = AnalyticsTrend.query.filter_by(
            questionnaire_id=questionnaire_id,
            period_type=PeriodType(period_type).value
        ).order_by(AnalyticsTrend.date.desc()).limit(limit).all()
        return [TrendRow.model_validate(r) for r in reversed(rows)]

    @storage_errors
    def list_breakdown(self, questionnaire_id, period_type, limit=20) -> List[BreakdownRow]:
        period_type = PeriodType(period_type).value
        latest = db.session.query(func.max(AnalyticsBreakdown.period_date)).filter(
            AnalyticsBreakdown.questionnaire_id == questionnaire_id,
            AnalyticsBreakdown.period_type == period_type
        ).scalar()
        if latest is None:
            return []

        rows = AnalyticsBreakdown.query.filter_by(
            questionnaire_id=questionnaire_id,
            period_type=period_type,
            period_date=latest
        ).order_by(AnalyticsBreakdown.avg_rating.desc(), AnalyticsBreakdown.area).limit(limit).all()
        return [BreakdownRow.model_validate(r) for r in rows]

    @storage_errors
    def commit(self) -> None:
        db.session.commit()

    def rollback(self) -> None:
        db.session.rollback()
