import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

import pandas as pd

from ulasis.application.repositories import SqlAlchemyResponseRepository
from ulasis.config import AnalyticsSettings, analytics_settings
from ulasis.domain import metrics
from ulasis.domain.exceptions import NotFoundError
from ulasis.domain.periods import to_naive_utc
from ulasis.domain.repositories import ResponseRepository
from ulasis.domain.schemas import BubbleAnalytics, BubbleCategory, PeriodComparison, PeriodWindow

logger = logging.getLogger(__name__)


class BubbleAnalyticsService:
    """
    Shapes area-level ratings for the dashboard bubble chart:
    size = response_count, position = rating, color = status tier.
    """

    def __init__(self, responses: Optional[ResponseRepository] = None,
                 settings: Optional[AnalyticsSettings] = None):
        self.responses = responses or SqlAlchemyResponseRepository()
        self.settings = settings or analytics_settings

    def _resolve_windows(self, date_from, date_to, comparison_period, compare_from, compare_to, now):
        date_from, date_to, compare_from, compare_to, now = (
            to_naive_utc(v) for v in (date_from, date_to, compare_from, compare_to, now)
        )
        date_to = date_to or now
        date_from = date_from or date_to - timedelta(days=self.settings.default_window_days)
        if date_from >= date_to:
            raise ValueError("date_from must be earlier than date_to")

        if comparison_period == 'custom':
            if compare_from is None or compare_to is None:
                raise ValueError("compare_from and compare_to are required for a custom comparison")
            if compare_from >= compare_to:
                raise ValueError("compare_from must be earlier than compare_to")
            return (date_from, date_to), (compare_from, compare_to)

        # Equal-length window ending where the current one starts
        duration = date_to - date_from
        return (date_from, date_to), (date_from - duration, date_from)

    def _area_frame(self, questionnaire_id: int, start: datetime, end: datetime) -> pd.DataFrame:
        # Bubbles only reflect finished submissions
        ratings = self.responses.find_rated_answers(questionnaire_id, start, end, only_complete=True)
        return pd.DataFrame([r.model_dump() for r in ratings],
                            columns=['response_id', 'response_date', 'area', 'rating_score'])

    @staticmethod
    def _by_area(frame: pd.DataFrame) -> pd.DataFrame:
        if frame.empty:
            return pd.DataFrame(columns=['avg_rating', 'responses'])
        return frame.astype({'rating_score': float}).groupby('area').agg(
            avg_rating=('rating_score', 'mean'),
            responses=('response_id', 'nunique')
        )

    @staticmethod
    def _overall(frame: pd.DataFrame) -> Optional[float]:
        if frame.empty:
            return None
        return float(frame['rating_score'].astype(float).mean())

    @staticmethod
    def _overall_trend(trends) -> str:
        counts = Counter(trends)
        if counts['improving'] > counts['declining']:
            return 'improving'
        if counts['declining'] > counts['improving']:
            return 'declining'
        return 'stable'

    def get_bubble_analytics(self, questionnaire_id: int, date_from: Optional[datetime] = None,
                             date_to: Optional[datetime] = None, comparison_period: str = 'week',
                             compare_from: Optional[datetime] = None, compare_to: Optional[datetime] = None,
                             now: Optional[datetime] = None) -> BubbleAnalytics:
        questionnaire = self.responses.get_questionnaire(questionnaire_id)
        if not questionnaire.is_active:
            raise NotFoundError('Questionnaire', questionnaire_id)
        now = to_naive_utc(now) or datetime.utcnow()

        (cur_from, cur_to), (prev_from, prev_to) = self._resolve_windows(
            date_from, date_to, comparison_period, compare_from, compare_to, now
        )

        current = self._area_frame(questionnaire_id, cur_from, cur_to)
        previous = self._area_frame(questionnaire_id, prev_from, prev_to)
        current_areas = self._by_area(current)
        previous_areas = self._by_area(previous)

        total_responses = self.responses.count_responses_by_questionnaire(questionnaire_id, cur_from, cur_to)
        previous_total = self.responses.count_responses_by_questionnaire(questionnaire_id, prev_from, prev_to)

        categories = []
        for area, stats in current_areas.sort_index().iterrows():
            rating = float(stats['avg_rating'])
            prev_rating = None
            if area in previous_areas.index:
                prev_rating = float(previous_areas.loc[area, 'avg_rating'])

            status = metrics.classify_status(rating, metrics.percent_change(rating, prev_rating), self.settings)
            response_count = int(stats['responses'])

            categories.append(BubbleCategory(
                name=area,
                rating=metrics.round_half_up(rating, 2),
                response_count=response_count,
                response_rate=min(metrics.percentage(response_count, total_responses, 2), 100.0),
                color=metrics.status_color(status),
                trend=metrics.trend_direction(rating, prev_rating, self.settings)
            ))

        current_avg = self._overall(current)
        previous_avg = self._overall(previous)

        scans = self.responses.count_scans(questionnaire_id)
        response_rate = min(metrics.percentage(total_responses, scans, 2), 100.0) if scans else 0.0

        logger.info(f"[BUBBLE] Questionnaire {questionnaire_id}: {len(categories)} areas, "
                    f"{total_responses} responses between {cur_from} and {cur_to}")

        return BubbleAnalytics(
            questionnaire_id=questionnaire_id,
            categories=categories,
            total_responses=total_responses,
            response_rate=response_rate,
            period_comparison=PeriodComparison(
                current_period=PeriodWindow(
                    start=cur_from, end=cur_to, total_responses=total_responses,
                    avg_rating=metrics.round_half_up(current_avg, 2) if current_avg is not None else None
                ),
                previous_period=PeriodWindow(
                    start=prev_from, end=prev_to, total_responses=previous_total,
                    avg_rating=metrics.round_half_up(previous_avg, 2) if previous_avg is not None else None
                ),
                change_percentage=metrics.percent_change(current_avg, previous_avg),
                overall_trend=self._overall_trend(c.trend for c in categories)
            ),
            generated_at=now
        )
