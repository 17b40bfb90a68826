"""
Arithmetic shared by every aggregator: rounding, percentages, trends and the
status/color tiers derived from them.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from ulasis.config import AnalyticsSettings


def round_half_up(value: float, places: int = 0):
    """
    Rounds half away from zero (2.5 -> 3, 0.125 -> 0.13), unlike round().
    Returns an int when places == 0.
    """
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    if places == 0:
        return int(rounded)
    return float(rounded)


def percentage(part: float, total: float, places: int = 0):
    """part / total * 100, rounded; 0 when total is 0."""
    if not total:
        return 0 if places == 0 else 0.0
    return round_half_up(part / total * 100, places)


def percent_change(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    """(current - previous) / previous * 100 at 2 dp; None when undefined."""
    if current is None or previous is None or previous == 0:
        return None
    return round_half_up((current - previous) / previous * 100, 2)


def classify_status(avg_rating: Optional[float], trend: Optional[float],
                    settings: AnalyticsSettings) -> str:
    """
    Good:    rating >= good threshold and not declining.
    Urgent:  rating below urgent threshold, or trend at/below the urgent drop.
    Monitor: everything else, including areas without a rating.
    """
    if avg_rating is None:
        return 'Monitor'
    if avg_rating < settings.urgent_rating_threshold:
        return 'Urgent'
    if trend is not None and trend <= settings.urgent_trend_threshold:
        return 'Urgent'
    if avg_rating >= settings.good_rating_threshold and (trend is None or trend >= 0):
        return 'Good'
    return 'Monitor'


STATUS_COLORS = {
    'Good': 'green',
    'Monitor': 'yellow',
    'Urgent': 'red',
}


def status_color(status: str) -> str:
    return STATUS_COLORS[status]


def trend_direction(current: Optional[float], previous: Optional[float],
                    settings: AnalyticsSettings) -> str:
    """Rating delta outside the stable band decides the direction."""
    if current is None or previous is None:
        return 'stable'
    diff = current - previous
    if diff > settings.trend_stable_band:
        return 'improving'
    if diff < -settings.trend_stable_band:
        return 'declining'
    return 'stable'


def resolve_area(category: Optional[str], category_mapping: Optional[dict],
                 default: str = 'uncategorized') -> str:
    """Maps a question category onto its improvement area."""
    if not category:
        return default
    mapping = (category_mapping or {}).get(category)
    if not mapping:
        return category
    return mapping.get('improvementArea') or mapping.get('name') or category
