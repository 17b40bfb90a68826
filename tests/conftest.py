import pytest
from datetime import datetime
from typing import Dict, List, Optional

from ulasis.app import create_app
from ulasis.extensions import db
from ulasis.domain.models import Questionnaire, Question, QRCode, Response, Answer
from ulasis.domain.exceptions import NotFoundError, RepositoryError
from ulasis.domain.repositories import AnswerRepository, ResponseRepository, AnalyticsRepository
from ulasis.domain.schemas import (
    AnswerRecord, AnswerCounts, QuestionnaireRecord, ResponseTotals, ResponseRow,
    RatedAnswerRow, QRCodeActivity, KPIRow
)


@pytest.fixture(scope='session')
def app():
    """
    Creates a Flask app context for tests.
    Passes test_config to force SQLite and override environment variables.
    """
    test_config = {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "CELERY_BROKER_URL": "memory://",
        "CELERY_RESULT_BACKEND": "cache+memory://"
    }

    app = create_app(test_config=test_config)

    yield app


@pytest.fixture(scope='function')
def client(app):
    """
    A test client for the app.
    """
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """
    A test runner for the app's CLI commands.
    """
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def db_session(app):
    """
    Creates a fresh database for each test function.
    Create tables -> Run Test -> Drop tables.
    """
    with app.app_context():
        db.create_all()

        yield db.session

        db.session.remove()
        db.drop_all()


@pytest.fixture
def survey(db_session):
    """
    A questionnaire with two rated areas and one free-text question.
    - 'staff' questions are mapped onto the 'Service' improvement area
    - 'food' has no mapping and keeps its own name
    - One active QR code with 10 scans
    """
    questionnaire = Questionnaire(
        title="Cafe Feedback",
        category_mapping={"staff": {"improvementArea": "Service"}}
    )
    db_session.add(questionnaire)
    db_session.flush()

    staff = Question(questionnaire_id=questionnaire.id, question_text="How friendly was our staff?",
                     question_type='rating', category='staff', is_required=True,
                     min_value=1, max_value=5, order_index=1)
    food = Question(questionnaire_id=questionnaire.id, question_text="How was the food?",
                    question_type='rating', category='food', min_value=1, max_value=5, order_index=2)
    comment = Question(questionnaire_id=questionnaire.id, question_text="Anything else?",
                       question_type='text', max_length=50, order_index=3)
    qr_code = QRCode(questionnaire_id=questionnaire.id, location_tag="Table 1", scan_count=10)

    db_session.add_all([staff, food, comment, qr_code])
    db_session.commit()

    return {"questionnaire": questionnaire, "staff": staff, "food": food,
            "comment": comment, "qr_code": qr_code}


@pytest.fixture
def add_response(db_session):
    """Factory persisting a response with rated answers: add_response(questionnaire_id, date, {question_id: score})."""

    def _add(questionnaire_id: int, response_date: datetime, ratings: Dict[int, float],
             is_complete: bool = True) -> Response:
        response = Response(questionnaire_id=questionnaire_id, response_date=response_date,
                            is_complete=is_complete, progress_percentage=100 if is_complete else 50)
        db_session.add(response)
        db_session.flush()
        for question_id, score in ratings.items():
            db_session.add(Answer(response_id=response.id, question_id=question_id, rating_score=score))
        db_session.commit()
        return response

    return _add


# IN-MEMORY REPOSITORIES
# Used by the unit tests to exercise the services without a database.

class InMemoryAnswerRepository(AnswerRepository):

    def __init__(self, answers: Optional[List[AnswerRecord]] = None,
                 question_ids: Optional[Dict[int, List[int]]] = None,
                 fail_average: bool = False):
        self.answers = answers or []
        self.question_ids = question_ids or {}
        self.fail_average = fail_average
        self.calls = []

    def _matching(self, question_ids, include_skipped=False, only_valid=False):
        return [
            a for a in self.answers
            if a.question_id in question_ids
            and (include_skipped or not a.is_skipped)
            and (not only_valid or a.validation_status == 'valid')
        ]

    def find_answers_by_question(self, question_id, include_skipped=False, only_valid=False,
                                 date_from=None, date_to=None):
        return [
            a for a in self._matching([question_id], include_skipped, only_valid)
            if (date_from is None or a.created_at >= date_from)
            and (date_to is None or a.created_at < date_to)
        ]

    def find_answers_by_question_ids(self, question_ids, include_skipped=False, only_valid=False):
        return self._matching(list(question_ids), include_skipped, only_valid)

    def count_answers_by_question(self, question_ids, include_skipped=False):
        self.calls.append('count')
        counts = {}
        for a in self.answers:
            if a.question_id not in question_ids:
                continue
            c = counts.setdefault(a.question_id, AnswerCounts())
            c.total += 1
            c.skipped += int(a.is_skipped)
            if a.validation_status == 'valid' and (include_skipped or not a.is_skipped):
                c.valid += 1
        return counts

    def average_rating_by_question(self, question_ids):
        self.calls.append('average')
        if self.fail_average:
            raise RepositoryError("average_rating_by_question failed")
        scores = {}
        for a in self._matching(list(question_ids), only_valid=True):
            if a.rating_score is not None:
                scores.setdefault(a.question_id, []).append(a.rating_score)
        return {qid: sum(v) / len(v) for qid, v in scores.items()}

    def list_question_ids(self, questionnaire_id):
        return self.question_ids.get(questionnaire_id, [])


class InMemoryResponseRepository(ResponseRepository):

    def __init__(self, questionnaires=None, responses=None, ratings=None, scans=0, qr_codes=None):
        self.questionnaires = {q.id: q for q in (questionnaires or [])}
        self.responses: List[ResponseRow] = responses or []
        self.ratings: List[RatedAnswerRow] = ratings or []
        self.scans = scans
        self.qr_codes: List[QRCodeActivity] = qr_codes or []

    def get_questionnaire(self, questionnaire_id):
        if questionnaire_id not in self.questionnaires:
            raise NotFoundError('Questionnaire', questionnaire_id)
        return self.questionnaires[questionnaire_id]

    def list_active_questionnaire_ids(self):
        return sorted(q.id for q in self.questionnaires.values() if q.is_active)

    def _responses_between(self, date_from, date_to):
        return [
            r for r in self.responses
            if (date_from is None or r.response_date >= date_from)
            and (date_to is None or r.response_date < date_to)
        ]

    def count_responses_by_questionnaire(self, questionnaire_id, date_from=None, date_to=None):
        return len(self._responses_between(date_from, date_to))

    def summarize_responses(self, questionnaire_id, date_from=None, date_to=None):
        rows = self._responses_between(date_from, date_to)
        return ResponseTotals(total=len(rows), complete=sum(1 for r in rows if r.is_complete))

    def find_responses(self, questionnaire_id, start, end):
        return self._responses_between(start, end)

    def find_rated_answers(self, questionnaire_id, start=None, end=None, only_complete=False):
        complete = {r.id for r in self.responses if r.is_complete}
        return [
            r for r in self.ratings
            if (start is None or r.response_date >= start)
            and (end is None or r.response_date < end)
            and (not only_complete or r.response_id in complete)
        ]

    def count_scans(self, questionnaire_id):
        return self.scans

    def list_qr_code_activity(self, questionnaire_id, date_from=None, date_to=None):
        return list(self.qr_codes)


class InMemoryAnalyticsRepository(AnalyticsRepository):

    def __init__(self):
        self.breakdown = {}
        self.trends = {}
        self.kpis = {}
        self.commits = 0
        self.rollbacks = 0

    @staticmethod
    def _store(table, key, row) -> bool:
        created = key not in table
        table[key] = row
        return created

    def upsert_breakdown(self, row):
        return self._store(self.breakdown, (row.questionnaire_id, row.period_type, row.period_date, row.area), row)

    def upsert_trend(self, row):
        return self._store(self.trends, (row.questionnaire_id, row.period_type, row.period_date, row.date), row)

    def upsert_kpi(self, row):
        return self._store(self.kpis, (row.questionnaire_id, row.period_type, row.period_date), row)

    def latest_kpi(self, questionnaire_id, period_type) -> Optional[KPIRow]:
        rows = [r for (qid, ptype, _), r in self.kpis.items() if qid == questionnaire_id and ptype == period_type]
        return max(rows, key=lambda r: r.period_date) if rows else None

    def list_trends(self, questionnaire_id, period_type, limit=30):
        rows = sorted((r for r in self.trends.values()
                       if r.questionnaire_id == questionnaire_id and r.period_type == period_type),
                      key=lambda r: r.date)
        return rows[-limit:] if limit else rows

    def list_breakdown(self, questionnaire_id, period_type, limit=20):
        rows = [r for r in self.breakdown.values()
                if r.questionnaire_id == questionnaire_id and r.period_type == period_type]
        if not rows:
            return []
        latest = max(r.period_date for r in rows)
        rows = sorted((r for r in rows if r.period_date == latest), key=lambda r: (-r.avg_rating, r.area))
        return rows[:limit] if limit else rows

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


@pytest.fixture
def cafe_data():
    """
    Ratings for questionnaire 1 across two Monday-started weeks.

    Week of 2024-01-01 (previous):
        - Response 1 (Jan 2, complete): Service 4.0
    Week of 2024-01-08 (current):
        - Response 2 (Jan 9 10:00, complete):   Service 4.0, food 2.0
        - Response 3 (Jan 9 15:00, incomplete): Service 4.6
        - Response 4 (Jan 10, complete):        no ratings

    Expected for the current week:
        - Service: avg 4.3, 2 responses, trend +7.5% -> Good
        - food:    avg 2.0, 1 response,  no trend     -> Urgent
        - KPI: 3 responses, avg 3.53, 66.67% positive, 30% of 10 scans
    Bubbles only read complete responses, so their Service average is 4.0.
    """
    responses = [
        ResponseRow(id=1, response_date=datetime(2024, 1, 2, 12), is_complete=True),
        ResponseRow(id=2, response_date=datetime(2024, 1, 9, 10), is_complete=True),
        ResponseRow(id=3, response_date=datetime(2024, 1, 9, 15), is_complete=False),
        ResponseRow(id=4, response_date=datetime(2024, 1, 10, 9), is_complete=True),
    ]
    ratings = [
        RatedAnswerRow(response_id=1, response_date=datetime(2024, 1, 2, 12), area='Service', rating_score=4.0),
        RatedAnswerRow(response_id=2, response_date=datetime(2024, 1, 9, 10), area='Service', rating_score=4.0),
        RatedAnswerRow(response_id=2, response_date=datetime(2024, 1, 9, 10), area='food', rating_score=2.0),
        RatedAnswerRow(response_id=3, response_date=datetime(2024, 1, 9, 15), area='Service', rating_score=4.6),
    ]
    return InMemoryResponseRepository(
        questionnaires=[QuestionnaireRecord(id=1, title="Cafe Feedback")],
        responses=responses,
        ratings=ratings,
        scans=10
    )


@pytest.fixture
def make_answer_repository():
    return InMemoryAnswerRepository


@pytest.fixture
def make_response_repository():
    return InMemoryResponseRepository


@pytest.fixture
def analytics_store():
    return InMemoryAnalyticsRepository()
