from datetime import datetime
from unittest.mock import patch

import pytest

from ulasis.domain.exceptions import RepositoryError
from ulasis.extensions import db
from ulasis.domain.models import Response


@pytest.fixture
def cafe_db(survey, add_response):
    qid = survey['questionnaire'].id
    staff, food = survey['staff'].id, survey['food'].id

    add_response(qid, datetime(2024, 1, 2, 12), {staff: 4.0})
    add_response(qid, datetime(2024, 1, 9, 10), {staff: 4.0, food: 2.0})
    add_response(qid, datetime(2024, 1, 9, 15), {staff: 4.6}, is_complete=False)
    return survey


class TestApiEndpoints:
    """
    API Integration.
    Exercises the Flask routes end to end over an in-memory SQLite database.
    """

    # --- System & Health ---

    def test_health_check(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.json == {"status": "ok", "service": "ulasis-analytics"}

    # --- Endpoint: /analytics/bubble ---

    def test_bubble_payload(self, client, cafe_db):
        """
        GIVEN the cafe ratings
        WHEN GET /api/v1/analytics/bubble/<id> is called for the week of 2024-01-08
        THEN areas come back with rating, size, color and trend
        """
        qid = cafe_db['questionnaire'].id
        response = client.get(f'/api/v1/analytics/bubble/{qid}'
                              '?date_from=2024-01-08T00:00:00&date_to=2024-01-15T00:00:00')

        assert response.status_code == 200
        data = response.json
        assert data['questionnaire_id'] == qid
        assert data['total_responses'] == 2
        assert data['response_rate'] == 20.0

        categories = {c['name']: c for c in data['categories']}
        # The incomplete 4.6 response is left out of the ratings
        assert categories['Service'] == {
            "name": "Service", "rating": 4.0, "response_count": 1, "response_rate": 50.0,
            "color": "green", "trend": "stable"
        }
        assert categories['food']['color'] == 'red'
        assert data['period_comparison']['previous_period']['start'] == '2024-01-01T00:00:00'

    def test_bubble_accepts_utc_suffixed_bounds(self, client, cafe_db):
        """
        GIVEN bounds sent as ISO timestamps with a 'Z' suffix
        WHEN GET /api/v1/analytics/bubble/<id> is called, with and without date_to
        THEN the request succeeds and the window is reported in naive UTC
        """
        qid = cafe_db['questionnaire'].id
        response = client.get(f'/api/v1/analytics/bubble/{qid}'
                              '?date_from=2024-01-08T00:00:00Z&date_to=2024-01-15T00:00:00Z')

        assert response.status_code == 200
        assert response.json['period_comparison']['current_period']['start'] == '2024-01-08T00:00:00'
        assert response.json['total_responses'] == 2

        open_ended = client.get(f'/api/v1/analytics/bubble/{qid}?date_from=2024-01-08T00:00:00Z')
        assert open_ended.status_code == 200

    def test_bubble_inactive_questionnaire(self, client, cafe_db, db_session):
        cafe_db['questionnaire'].is_active = False
        db_session.commit()

        response = client.get(f"/api/v1/analytics/bubble/{cafe_db['questionnaire'].id}")
        assert response.status_code == 404

    def test_bubble_unknown_questionnaire(self, client, db_session):
        response = client.get('/api/v1/analytics/bubble/999')
        assert response.status_code == 404
        assert "not found" in response.json['error']

    def test_bubble_invalid_query(self, client, cafe_db):
        qid = cafe_db['questionnaire'].id
        response = client.get(f'/api/v1/analytics/bubble/{qid}?comparison_period=month')
        assert response.status_code == 400

    def test_bubble_custom_comparison_without_bounds(self, client, cafe_db):
        qid = cafe_db['questionnaire'].id
        response = client.get(f'/api/v1/analytics/bubble/{qid}?comparison_period=custom')
        assert response.status_code == 400
        assert "compare_from" in response.json['error']

    def test_storage_failure_returns_500(self, client, cafe_db):
        qid = cafe_db['questionnaire'].id
        with patch('ulasis.application.services.bubble.BubbleAnalyticsService.get_bubble_analytics',
                   side_effect=RepositoryError("db down")):
            response = client.get(f'/api/v1/analytics/bubble/{qid}')

        assert response.status_code == 500
        assert response.json == {"error": "Storage temporarily unavailable"}

    # --- Endpoints: /analytics/refresh + /analytics/dashboard ---

    def test_refresh_then_dashboard(self, client, cafe_db):
        qid = cafe_db['questionnaire'].id

        with patch('ulasis.application.services.aggregation.datetime') as mock_dt:
            mock_dt.utcnow.return_value = datetime(2024, 1, 14, 12)
            refresh = client.post(f'/api/v1/analytics/refresh/{qid}', json={"period_types": ["week"]})

        assert refresh.status_code == 200
        assert refresh.json['kpis'] == {"created": 5, "updated": 0}

        dashboard = client.get(f'/api/v1/analytics/dashboard/{qid}?period_type=week')
        assert dashboard.status_code == 200
        assert dashboard.json['kpi']['period_date'] == '2024-01-08'
        assert dashboard.json['kpi']['total_responses'] == 2
        assert [row['area'] for row in dashboard.json['breakdown']] == ['Service', 'food']

    def test_refresh_rejects_bad_period_type(self, client, cafe_db):
        qid = cafe_db['questionnaire'].id
        response = client.post(f'/api/v1/analytics/refresh/{qid}', json={"period_types": ["decade"]})
        assert response.status_code == 400

    def test_dashboard_unknown_questionnaire(self, client, db_session):
        assert client.get('/api/v1/analytics/dashboard/42').status_code == 404

    # --- Endpoint: /questionnaires/<id>/statistics ---

    def test_questionnaire_statistics(self, client, cafe_db):
        qid = cafe_db['questionnaire'].id
        response = client.get(f'/api/v1/questionnaires/{qid}/statistics')

        assert response.status_code == 200
        data = response.json
        assert data['responses']['total_responses'] == 3
        assert data['responses']['completion_rate'] == 67

        staff = data['questions'][str(cafe_db['staff'].id)]
        assert staff['total_answers'] == 3
        assert staff['average_rating'] == 4.2
        assert data['questions'][str(cafe_db['comment'].id)]['total_answers'] == 0

        # 4.0, 4.0 and 4.6 (rounded to 5)
        assert data['distributions'][str(cafe_db['staff'].id)]['ratings'] == {"4": 2, "5": 1}
        assert data['distributions'][str(cafe_db['comment'].id)] == {"ratings": {}, "choices": {}}

        assert data['qr_codes'] == [{
            "qr_code_id": cafe_db['qr_code'].id, "location_tag": "Table 1", "scan_count": 10, "responses": 0
        }]
        assert data['kpis'] == {
            "average_rating": 3.1,
            "response_quality_score": 66.83,
            "engagement_score": 30,
            "total_responses": 3,
            "completion_rate": 67,
            "best_area": "Service",
            "worst_area": "food",
            "area_count": 2
        }

    # --- Submissions ---

    def test_submission_flow(self, client, survey):
        """
        GIVEN the cafe questionnaire
        WHEN a response is created, completed, duplicated and deleted through the API
        THEN each step returns the matching status code
        """
        qid = survey['questionnaire'].id
        created = client.post(f'/api/v1/questionnaires/{qid}/responses', json={
            "qr_code_id": survey['qr_code'].id,
            "answers": [{"question_id": survey['staff'].id, "rating_score": 5}]
        })
        assert created.status_code == 201
        assert created.json['progress_percentage'] == 33.33
        response_id = created.json['id']

        answer = client.post(f'/api/v1/responses/{response_id}/answers',
                             json={"question_id": survey['food'].id, "rating_score": 4})
        assert answer.status_code == 201
        assert answer.json['validation_status'] == 'valid'

        duplicate = client.post(f'/api/v1/responses/{response_id}/answers',
                                json={"question_id": survey['food'].id, "rating_score": 1})
        assert duplicate.status_code == 409

        deleted = client.delete(f'/api/v1/responses/{response_id}')
        assert deleted.status_code == 204
        assert db.session.get(Response, response_id).deleted_at is not None

        assert client.delete(f'/api/v1/responses/{response_id}').status_code == 404

    def test_unique_index_conflict_returns_409(self, client, survey):
        qid = survey['questionnaire'].id
        created = client.post(f'/api/v1/questionnaires/{qid}/responses', json={
            "answers": [{"question_id": survey['staff'].id, "rating_score": 5}]
        })

        with patch('ulasis.application.services.responses.ResponseService._has_answer', return_value=False):
            conflict = client.post(f"/api/v1/responses/{created.json['id']}/answers",
                                   json={"question_id": survey['staff'].id, "rating_score": 2})

        assert conflict.status_code == 409
        assert "already has an answer" in conflict.json['error']

    def test_invalid_payload(self, client, survey):
        qid = survey['questionnaire'].id
        response = client.post(f'/api/v1/questionnaires/{qid}/responses', json={"completion_time": -5})

        assert response.status_code == 400
        assert response.json['error'] == "Invalid payload"
        assert response.json['details'][0]['loc'] == ['completion_time']

    def test_unknown_questionnaire_submission(self, client, db_session):
        response = client.post('/api/v1/questionnaires/77/responses', json={"answers": []})
        assert response.status_code == 404


def test_cli_refresh_unknown_questionnaire(runner, db_session):
    result = runner.invoke(args=['refresh-analytics', '555'])
    assert "failed" in result.output


def test_cli_trigger_refresh(runner):
    with patch('ulasis.app.async_refresh_analytics.delay') as mock_delay:
        mock_delay.return_value.id = "task-123"
        result = runner.invoke(args=['trigger-refresh', '1'])

    mock_delay.assert_called_once_with(1)
    assert "task-123" in result.output
