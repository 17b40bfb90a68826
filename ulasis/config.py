"""
Application configuration.

Flask settings are read from the environment by `Config`; business thresholds
for the analytics engine live in `AnalyticsSettings` so they can be tuned per
deployment without code changes.
"""
import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class AnalyticsSettings(BaseSettings):
    """
    Tunable cutoffs for the analytics engine.
    Every value can be overridden with a ULASIS_ prefixed environment variable
    (e.g. ULASIS_GOOD_RATING_THRESHOLD=4.5).
    """
    model_config = SettingsConfigDict(env_prefix='ULASIS_', env_file='.env', extra='ignore')

    # Status tiers (Good / Monitor / Urgent)
    good_rating_threshold: float = 4.0
    urgent_rating_threshold: float = 3.0
    # Trend (in %) at or below which an area is Urgent regardless of rating
    urgent_trend_threshold: float = -10.0

    # Ratings at or above this count as positive sentiment
    positive_rating_threshold: float = 4.0

    # Bubble chart: rating delta that still counts as 'stable'
    trend_stable_band: float = 0.2
    default_window_days: int = 7

    # Period aggregation horizon when no explicit range is given
    refresh_lookback_days: int = 30

    # Response volume that counts as full engagement (engagement score 100)
    engagement_target_responses: int = 10

    uncategorized_area: str = 'uncategorized'


analytics_settings = AnalyticsSettings()


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///ulasis.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
    CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
