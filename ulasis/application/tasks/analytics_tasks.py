import logging
from contextlib import nullcontext
from datetime import datetime, timedelta

from flask import has_app_context

from ulasis.extensions import celery
from ulasis.application.services.aggregation import PeriodAggregationService
from ulasis.application.repositories import SqlAlchemyResponseRepository
from ulasis.domain.exceptions import NotFoundError

logger = logging.getLogger(__name__)


def _app_context():
    """Workers run outside Flask; build an app so the session is bound."""
    if has_app_context():
        return nullcontext()
    from ulasis.app import create_app
    return create_app().app_context()


@celery.task(bind=True, max_retries=3)
def async_refresh_analytics(self, questionnaire_id: int, period_types=None, days: int = None):
    """
    Recomputes the materialized analytics of one questionnaire.
    Retries with exponential backoff on storage failures; unknown ids are not retried.
    """
    logger.info(f"Task: Refreshing analytics for questionnaire {questionnaire_id} "
                f"(periods={period_types or 'all'}, days={days or 'default'})")

    with _app_context():
        try:
            start = datetime.utcnow() - timedelta(days=days) if days else None
            result = PeriodAggregationService().refresh_analytics(
                questionnaire_id, period_types=period_types, start=start
            )
            return result.model_dump()

        except NotFoundError as e:
            logger.warning(f"Task: {e}, skipping")
            return None

        except Exception as exc:
            logger.error(f"Task failed: {exc}")
            # Exponential backoff retry: 60s, 120s, 240s...
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))


@celery.task(bind=True)
def async_refresh_all_questionnaires(self, days: int = None):
    """
    Scheduled entry point (daily). Refreshes every active questionnaire in turn;
    one failing questionnaire does not stop the batch.
    """
    logger.info("Task: Starting analytics refresh for all questionnaires...")

    with _app_context():
        questionnaire_ids = SqlAlchemyResponseRepository().list_active_questionnaire_ids()
        total = len(questionnaire_ids)
        logger.info(f"Task: Found {total} active questionnaires.")

        service = PeriodAggregationService()
        start = datetime.utcnow() - timedelta(days=days) if days else None
        success_count = 0
        error_count = 0

        for questionnaire_id in questionnaire_ids:
            try:
                service.refresh_analytics(questionnaire_id, start=start)
                success_count += 1
            except Exception as e:
                error_count += 1
                logger.error(f"Task: Failed to refresh questionnaire {questionnaire_id}. Error: {e}")
                continue

        return f"Refresh Complete. Success: {success_count}, Errors: {error_count}"
