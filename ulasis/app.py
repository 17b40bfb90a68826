from datetime import datetime, timedelta

import click
from flask import Flask

from ulasis.config import Config
from ulasis.extensions import db, celery, migrate
from ulasis.domain import models  # noqa: F401  (registers tables for migrations)
from ulasis.domain.periods import PeriodType
from ulasis.domain.exceptions import UlasisError
from ulasis.application.repositories import SqlAlchemyResponseRepository
from ulasis.application.services.aggregation import PeriodAggregationService
from ulasis.application.tasks.analytics_tasks import async_refresh_analytics, async_refresh_all_questionnaires
from ulasis.interface.api.routes import api_bp

PERIOD_CHOICES = click.Choice([p.value for p in PeriodType])


def create_app(test_config=None):
    app = Flask(__name__)
    if test_config is None:
        # Load from .env / config.py (Production/Dev)
        app.config.from_object(Config)
    else:
        # Load from test_config passed by Pytest
        app.config.from_mapping(test_config)

    # Initialize Extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Configure Celery
    celery.conf.update(
        broker_url=app.config.get('CELERY_BROKER_URL'),
        result_backend=app.config.get('CELERY_RESULT_BACKEND')
    )

    app.register_blueprint(api_bp)

    @app.cli.command("refresh-analytics")
    @click.argument("questionnaire_id", type=int, required=False)
    @click.option("--period-type", "period_types", multiple=True, type=PERIOD_CHOICES,
                  help="Restrict to one or more period types (default: all).")
    @click.option("--days", type=click.IntRange(min=1), default=None,
                  help="Look-back horizon in days (default: ULASIS_REFRESH_LOOKBACK_DAYS).")
    def refresh_analytics(questionnaire_id, period_types, days):
        """Synchronously recomputes analytics for one questionnaire, or all active ones."""
        service = PeriodAggregationService()
        start = datetime.utcnow() - timedelta(days=days) if days else None
        if questionnaire_id is None:
            ids = SqlAlchemyResponseRepository().list_active_questionnaire_ids()
        else:
            ids = [questionnaire_id]

        for qid in ids:
            try:
                result = service.refresh_analytics(qid, period_types=list(period_types) or None, start=start)
                click.echo(f"Questionnaire {qid}: {result.model_dump()}")
            except UlasisError as e:
                click.echo(f"Questionnaire {qid} failed: {e}", err=True)

    @app.cli.command("trigger-refresh")
    @click.argument("questionnaire_id", type=int, required=False)
    def trigger_refresh(questionnaire_id):
        """Triggers the Celery refresh task."""
        if questionnaire_id is None:
            task = async_refresh_all_questionnaires.delay()
        else:
            task = async_refresh_analytics.delay(questionnaire_id)
        click.echo(f"Task triggered! ID: {task.id}")

    @app.cli.command("export-breakdown")
    @click.argument("questionnaire_id", type=int)
    @click.argument("file_path")
    @click.option("--period-type", default=PeriodType.WEEK.value, type=PERIOD_CHOICES)
    def export_breakdown(questionnaire_id, file_path, period_type):
        """Writes the latest area breakdown to a CSV file."""
        try:
            count = PeriodAggregationService().export_breakdown(questionnaire_id, period_type, file_path)
            click.echo(f"Exported {count} rows to {file_path}")
        except UlasisError as e:
            click.echo(f"Export failed: {e}", err=True)

    # Healthcheck
    @app.route('/health')
    def health():
        return {"status": "ok", "service": "ulasis-analytics"}

    return app
