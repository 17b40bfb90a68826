from datetime import datetime, timedelta

from flask import Blueprint, request, jsonify, current_app
from pydantic import ValidationError

from ulasis.domain.schemas import (
    BubbleQuery, DashboardQuery, RefreshRequest, ResponseSubmission, AnswerSubmission
)
from ulasis.domain.exceptions import NotFoundError, InvariantViolationError, RepositoryError
from ulasis.application.services.bubble import BubbleAnalyticsService
from ulasis.application.services.aggregation import PeriodAggregationService
from ulasis.application.services.statistics import StatisticsService
from ulasis.application.services.responses import ResponseService

api_bp = Blueprint('api', __name__, url_prefix='/api/v1')


# ERROR MAPPING

@api_bp.errorhandler(NotFoundError)
def handle_not_found(e):
    return jsonify({"error": str(e)}), 404


@api_bp.errorhandler(InvariantViolationError)
def handle_conflict(e):
    return jsonify({"error": str(e)}), 409


@api_bp.errorhandler(ValidationError)
def handle_invalid_payload(e):
    details = e.errors(include_url=False, include_context=False, include_input=False)
    return jsonify({"error": "Invalid payload", "details": details}), 400


@api_bp.errorhandler(ValueError)
def handle_bad_request(e):
    return jsonify({"error": str(e)}), 400


@api_bp.errorhandler(RepositoryError)
def handle_storage_failure(e):
    current_app.logger.error(f"Storage failure: {e}")
    return jsonify({"error": "Storage temporarily unavailable"}), 500


# ANALYTICS

@api_bp.route('/analytics/bubble/<int:questionnaire_id>', methods=['GET'])
def get_bubble_analytics(questionnaire_id):
    """
    Bubble chart payload for one questionnaire.
    Query: date_from, date_to, comparison_period=week|custom, compare_from, compare_to.
    """
    query = BubbleQuery.model_validate(request.args.to_dict())

    data = BubbleAnalyticsService().get_bubble_analytics(
        questionnaire_id,
        date_from=query.date_from,
        date_to=query.date_to,
        comparison_period=query.comparison_period,
        compare_from=query.compare_from,
        compare_to=query.compare_to
    )
    return jsonify(data.model_dump(mode='json'))


@api_bp.route('/analytics/dashboard/<int:questionnaire_id>', methods=['GET'])
def get_dashboard(questionnaire_id):
    """Latest KPI, recent daily trends and best rated areas of the latest period."""
    query = DashboardQuery.model_validate(request.args.to_dict())
    data = PeriodAggregationService().get_dashboard_data(questionnaire_id, query.period_type)
    return jsonify(data.model_dump(mode='json'))


@api_bp.route('/analytics/refresh/<int:questionnaire_id>', methods=['POST'])
def refresh_analytics(questionnaire_id):
    """Synchronous refresh, meant for backfills. Scheduled refreshes go through Celery."""
    payload = RefreshRequest.model_validate(request.get_json(silent=True) or {})

    service = PeriodAggregationService()
    start = None
    if payload.days:
        start = datetime.utcnow() - timedelta(days=payload.days)

    result = service.refresh_analytics(questionnaire_id, period_types=payload.period_types, start=start)
    return jsonify(result.model_dump(mode='json'))


@api_bp.route('/questionnaires/<int:questionnaire_id>/statistics', methods=['GET'])
def get_questionnaire_statistics(questionnaire_id):
    stats = StatisticsService().get_questionnaire_statistics(questionnaire_id)
    return jsonify(stats.model_dump(mode='json'))


# SUBMISSIONS

@api_bp.route('/questionnaires/<int:questionnaire_id>/responses', methods=['POST'])
def create_response(questionnaire_id):
    payload = ResponseSubmission.model_validate(request.get_json(silent=True) or {})
    response = ResponseService.create_response(questionnaire_id, payload)
    return jsonify(response.model_dump(mode='json')), 201


@api_bp.route('/responses/<int:response_id>/answers', methods=['POST'])
def submit_answer(response_id):
    payload = AnswerSubmission.model_validate(request.get_json(silent=True) or {})
    answer = ResponseService.submit_answer(response_id, payload)
    return jsonify(answer.model_dump(mode='json')), 201


@api_bp.route('/responses/<int:response_id>', methods=['DELETE'])
def delete_response(response_id):
    ResponseService.soft_delete_response(response_id)
    return '', 204
