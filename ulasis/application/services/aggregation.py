import logging
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

import pandas as pd

from ulasis.application.repositories import SqlAlchemyResponseRepository, SqlAlchemyAnalyticsRepository
from ulasis.config import AnalyticsSettings, analytics_settings
from ulasis.domain import metrics
from ulasis.domain.periods import (
    PeriodType, ALL_PERIOD_TYPES, period_start, period_range, previous_period_start,
    iter_period_starts, iter_days
)
from ulasis.domain.repositories import ResponseRepository, AnalyticsRepository
from ulasis.domain.schemas import (
    BreakdownRow, TrendRow, KPIRow, DashboardData, RefreshResult
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RATING_COLUMNS = ['response_id', 'response_date', 'area', 'rating_score']
RESPONSE_COLUMNS = ['id', 'response_date', 'is_complete']


def _to_optional(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


class AnalyticsWindow:
    """
    Responses and rated answers of one questionnaire loaded once as DataFrames,
    with per-period aggregates derived from them on demand.
    """

    def __init__(self, responses: Iterable, ratings: Iterable, scans: int = 0):
        self.responses = pd.DataFrame([r.model_dump() for r in responses], columns=RESPONSE_COLUMNS)
        self.ratings = pd.DataFrame([r.model_dump() for r in ratings], columns=RATING_COLUMNS)
        self.scans = scans

        for frame in (self.responses, self.ratings):
            frame['response_date'] = pd.to_datetime(frame['response_date'])
            frame['day'] = frame['response_date'].dt.date
        self.ratings['rating_score'] = self.ratings['rating_score'].astype(float)
        self.responses['is_complete'] = self.responses['is_complete'].astype(bool)

        self._area_stats = {}

    @staticmethod
    def _between(frame: pd.DataFrame, start: datetime, end: datetime) -> pd.DataFrame:
        mask = (frame['response_date'] >= start) & (frame['response_date'] < end)
        return frame[mask]

    def area_stats(self, period_type: PeriodType) -> pd.DataFrame:
        """Mean rating and distinct responses indexed by (period_date, area)."""
        period_type = PeriodType(period_type)
        if period_type not in self._area_stats:
            frame = self.ratings.copy()
            if frame.empty:
                stats = pd.DataFrame(columns=['avg_rating', 'responses'])
            else:
                frame['period_date'] = (
                    frame['response_date'].dt.to_period(period_type.pandas_freq).dt.start_time.dt.date
                )
                stats = frame.groupby(['period_date', 'area']).agg(
                    avg_rating=('rating_score', 'mean'),
                    responses=('response_id', 'nunique')
                )
            self._area_stats[period_type] = stats
        return self._area_stats[period_type]

    def _areas_of(self, period_type: PeriodType, start: date) -> pd.DataFrame:
        stats = self.area_stats(period_type)
        if stats.empty or start not in stats.index.get_level_values('period_date'):
            return pd.DataFrame(columns=['avg_rating', 'responses'])
        return stats.xs(start, level='period_date')

    def breakdown(self, questionnaire_id: int, period_type: PeriodType, start: date,
                  settings: AnalyticsSettings) -> List[BreakdownRow]:
        current = self._areas_of(period_type, start)
        previous = self._areas_of(period_type, previous_period_start(start, period_type))

        rows = []
        for area, stats in current.sort_index().iterrows():
            avg = float(stats['avg_rating'])
            prev_avg = _to_optional(previous['avg_rating'].get(area)) if not previous.empty else None
            trend = metrics.percent_change(avg, prev_avg)
            rows.append(BreakdownRow(
                questionnaire_id=questionnaire_id,
                period_type=period_type,
                period_date=start,
                area=area,
                avg_rating=metrics.round_half_up(avg, 2),
                responses=int(stats['responses']),
                trend=trend,
                status=metrics.classify_status(avg, trend, settings)
            ))
        return rows

    def trends(self, questionnaire_id: int, period_type: PeriodType, start: date,
               until: Optional[date] = None) -> List[TrendRow]:
        period_from, period_to = period_range(start, period_type)
        last_day = period_to.date()
        if until is not None:
            last_day = min(last_day, until + timedelta(days=1))

        ratings = self._between(self.ratings, period_from, period_to)
        responses = self._between(self.responses, period_from, period_to)
        daily_rating = ratings.groupby('day')['rating_score'].mean()
        daily_responses = responses.groupby('day')['is_complete'].agg(['count', 'sum'])

        rows = []
        last_avg = None
        for day in iter_days(start, last_day):
            avg = _to_optional(daily_rating.get(day))

            rate = None
            if day in daily_responses.index:
                counts = daily_responses.loc[day]
                rate = metrics.percentage(int(counts['sum']), int(counts['count']), 2)

            trend_value = metrics.percent_change(avg, last_avg)
            if avg is not None:
                last_avg = avg

            rows.append(TrendRow(
                questionnaire_id=questionnaire_id,
                period_type=period_type,
                period_date=start,
                date=day,
                avg_rating=metrics.round_half_up(avg, 2) if avg is not None else None,
                response_rate=rate,
                trend_value=trend_value
            ))
        return rows

    def kpis(self, questionnaire_id: int, period_type: PeriodType, start: date,
             settings: AnalyticsSettings) -> KPIRow:
        period_from, period_to = period_range(start, period_type)
        responses = self._between(self.responses, period_from, period_to)
        row = KPIRow(
            questionnaire_id=questionnaire_id,
            period_type=period_type,
            period_date=start,
            total_responses=len(responses)
        )
        if responses.empty:
            return row

        scores = self._between(self.ratings, period_from, period_to)['rating_score']
        if not scores.empty:
            row.avg_rating = metrics.round_half_up(float(scores.mean()), 2)
            positive = int((scores >= settings.positive_rating_threshold).sum())
            row.positive_sentiment = metrics.percentage(positive, len(scores), 2)

        if self.scans:
            row.response_rate = min(metrics.percentage(len(responses), self.scans, 2), 100.0)
        return row


class PeriodAggregationService:
    """
    Materializes KPI, daily trend and per-area breakdown rows for day/week/month/year
    buckets, and reads them back for the dashboard.
    """

    def __init__(self, responses: Optional[ResponseRepository] = None,
                 analytics: Optional[AnalyticsRepository] = None,
                 settings: Optional[AnalyticsSettings] = None):
        self.responses = responses or SqlAlchemyResponseRepository()
        self.analytics = analytics or SqlAlchemyAnalyticsRepository()
        self.settings = settings or analytics_settings

    def _load_window(self, questionnaire_id: int, start: datetime, end: datetime) -> AnalyticsWindow:
        return AnalyticsWindow(
            responses=self.responses.find_responses(questionnaire_id, start, end),
            ratings=self.responses.find_rated_answers(questionnaire_id, start, end),
            scans=self.responses.count_scans(questionnaire_id)
        )

    def _load_period(self, questionnaire_id: int, period_type: PeriodType, period_date: date,
                     with_previous: bool = False) -> AnalyticsWindow:
        self.responses.get_questionnaire(questionnaire_id)
        start = period_start(period_date, period_type)
        if with_previous:
            start = previous_period_start(start, period_type)
        window_from, _ = period_range(start, period_type)
        _, window_to = period_range(period_start(period_date, period_type), period_type)
        return self._load_window(questionnaire_id, window_from, window_to)

    def calculate_breakdown(self, questionnaire_id: int, period_type: PeriodType,
                            period_date: date) -> List[BreakdownRow]:
        period_type = PeriodType(period_type)
        window = self._load_period(questionnaire_id, period_type, period_date, with_previous=True)
        return window.breakdown(questionnaire_id, period_type, period_start(period_date, period_type),
                                self.settings)

    def calculate_trends(self, questionnaire_id: int, period_type: PeriodType,
                         period_date: date, until: Optional[date] = None) -> List[TrendRow]:
        period_type = PeriodType(period_type)
        window = self._load_period(questionnaire_id, period_type, period_date)
        return window.trends(questionnaire_id, period_type, period_start(period_date, period_type), until)

    def calculate_kpis(self, questionnaire_id: int, period_type: PeriodType, period_date: date) -> KPIRow:
        period_type = PeriodType(period_type)
        window = self._load_period(questionnaire_id, period_type, period_date)
        return window.kpis(questionnaire_id, period_type, period_start(period_date, period_type), self.settings)

    @staticmethod
    def classify_status(avg_rating: Optional[float], trend: Optional[float],
                        settings: Optional[AnalyticsSettings] = None) -> str:
        return metrics.classify_status(avg_rating, trend, settings or analytics_settings)

    def refresh_analytics(self, questionnaire_id: int, period_types: Optional[Iterable[PeriodType]] = None,
                          start: Optional[datetime] = None, end: Optional[datetime] = None) -> RefreshResult:
        """
        Recomputes and upserts every period touching [start, end].
        Running it twice over unchanged data leaves the same rows behind.
        """
        self.responses.get_questionnaire(questionnaire_id)

        end = end or datetime.utcnow()
        start = start or end - timedelta(days=self.settings.refresh_lookback_days)
        types = [PeriodType(p) for p in (period_types or ALL_PERIOD_TYPES)]

        periods = {ptype: list(iter_period_starts(start, end, ptype)) for ptype in types}

        # One load covers every bucket plus the bucket before the first (breakdown trends)
        window_from = min(period_range(previous_period_start(starts[0], ptype), ptype)[0]
                          for ptype, starts in periods.items())
        window_to = max(period_range(starts[-1], ptype)[1] for ptype, starts in periods.items())

        logger.info(f"[ANALYTICS] Refreshing questionnaire {questionnaire_id} "
                    f"({', '.join(p.value for p in types)}) from {start.date()} to {end.date()}")

        window = self._load_window(questionnaire_id, window_from, window_to)
        result = RefreshResult(questionnaire_id=questionnaire_id)

        def tally(counts, created: bool):
            if created:
                counts.created += 1
            else:
                counts.updated += 1

        try:
            for ptype, starts in periods.items():
                for bucket in starts:
                    tally(result.kpis, self.analytics.upsert_kpi(
                        window.kpis(questionnaire_id, ptype, bucket, self.settings)))

                    for row in window.trends(questionnaire_id, ptype, bucket, until=end.date()):
                        tally(result.trends, self.analytics.upsert_trend(row))

                    for row in window.breakdown(questionnaire_id, ptype, bucket, self.settings):
                        tally(result.breakdown, self.analytics.upsert_breakdown(row))

            self.analytics.commit()
        except Exception as e:
            self.analytics.rollback()
            logger.error(f"[ANALYTICS] Refresh failed for questionnaire {questionnaire_id}: {e}")
            raise

        logger.info(f"[ANALYTICS] Questionnaire {questionnaire_id} refreshed: {result.model_dump()}")
        return result

    def get_dashboard_data(self, questionnaire_id: int, period_type: PeriodType = PeriodType.WEEK) -> DashboardData:
        self.responses.get_questionnaire(questionnaire_id)
        period_type = PeriodType(period_type)
        return DashboardData(
            kpi=self.analytics.latest_kpi(questionnaire_id, period_type),
            trends=self.analytics.list_trends(questionnaire_id, period_type, limit=30),
            breakdown=self.analytics.list_breakdown(questionnaire_id, period_type, limit=20)
        )

    def export_breakdown(self, questionnaire_id: int, period_type: PeriodType, path: str) -> int:
        """Writes the latest breakdown of the questionnaire to CSV. Returns the row count."""
        self.responses.get_questionnaire(questionnaire_id)
        rows = self.analytics.list_breakdown(questionnaire_id, PeriodType(period_type), limit=None)

        df = pd.DataFrame([r.model_dump(mode='json') for r in rows], columns=list(BreakdownRow.model_fields))
        df.to_csv(path, index=False)

        logger.info(f"[EXPORT] {len(df)} breakdown rows written to {path}")
        return len(df)
