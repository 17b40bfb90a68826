import logging
import math
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Optional

from ulasis.application.repositories import SqlAlchemyAnswerRepository, SqlAlchemyResponseRepository
from ulasis.config import AnalyticsSettings, analytics_settings
from ulasis.domain.exceptions import RepositoryError
from ulasis.domain.metrics import percentage, round_half_up
from ulasis.domain.repositories import AnswerRepository, ResponseRepository
from ulasis.domain.schemas import (
    AnswerCounts, AnswerRecord, AnswerStatistics, AnswerDistribution, RatedAnswerRow,
    ResponseStatistics, QuestionnaireKPIs, QuestionnaireStatistics
)

logger = logging.getLogger(__name__)


class StatisticsService:
    """
    Answer and response level statistics.
    Batch statistics run a fixed number of grouped queries no matter how many
    questions are requested.
    """

    def __init__(self, answers: Optional[AnswerRepository] = None,
                 responses: Optional[ResponseRepository] = None,
                 settings: Optional[AnalyticsSettings] = None):
        self.answers = answers or SqlAlchemyAnswerRepository()
        self.responses = responses or SqlAlchemyResponseRepository()
        self.settings = settings or analytics_settings

    @staticmethod
    def _build(counts: AnswerCounts, average: Optional[float], degraded: bool) -> AnswerStatistics:
        total = counts.total
        return AnswerStatistics(
            total_answers=total,
            skipped_answers=counts.skipped,
            valid_answers=counts.valid,
            invalid_answers=total - counts.valid,
            skip_rate=percentage(counts.skipped, total),
            valid_rate=percentage(counts.valid, total),
            average_rating=round_half_up(average, 2) if average is not None else 0.0,
            degraded_metrics=['average_rating'] if degraded else []
        )

    def get_batch_statistics(self, question_ids: Iterable[int],
                             include_skipped: bool = False) -> Dict[int, AnswerStatistics]:
        ids = list(dict.fromkeys(question_ids))
        if not ids:
            return {}

        counts = self.answers.count_answers_by_question(ids, include_skipped=include_skipped)

        degraded = False
        try:
            averages = self.answers.average_rating_by_question(ids)
        except RepositoryError as e:
            # Counts are still meaningful without the average
            logger.warning(f"[STATS] Average rating unavailable for questions {ids}: {e}")
            averages = {}
            degraded = True

        return {
            qid: self._build(counts.get(qid, AnswerCounts()), averages.get(qid), degraded)
            for qid in ids
        }

    def get_statistics(self, question_id: int, include_skipped: bool = False) -> AnswerStatistics:
        return self.get_batch_statistics([question_id], include_skipped=include_skipped)[question_id]

    # DISTRIBUTIONS

    @staticmethod
    def _distribution(answers: Iterable[AnswerRecord]) -> AnswerDistribution:
        ratings = Counter()
        choices = Counter()
        for answer in answers:
            if answer.is_skipped:
                continue
            if answer.rating_score is not None and math.isfinite(answer.rating_score):
                ratings[round_half_up(answer.rating_score)] += 1
            choices.update(answer.selected_options)

        return AnswerDistribution(ratings=dict(sorted(ratings.items())), choices=dict(choices))

    def get_distribution(self, question_id: int, date_from=None, date_to=None) -> AnswerDistribution:
        """Rating and choice distribution of one question, optionally limited to answers created in a window."""
        answers = self.answers.find_answers_by_question(question_id, date_from=date_from, date_to=date_to)
        return self._distribution(answers)

    def get_batch_distributions(self, question_ids: Iterable[int]) -> Dict[int, AnswerDistribution]:
        ids = list(dict.fromkeys(question_ids))
        grouped = {qid: [] for qid in ids}
        for answer in self.answers.find_answers_by_question_ids(ids):
            grouped[answer.question_id].append(answer)
        return {qid: self._distribution(answers) for qid, answers in grouped.items()}

    # RESPONSES & KPIS

    def get_response_statistics(self, questionnaire_id: int, date_from=None, date_to=None) -> ResponseStatistics:
        totals = self.responses.summarize_responses(questionnaire_id, date_from, date_to)

        avg_time = totals.average_completion_time
        avg_progress = totals.average_progress

        return ResponseStatistics(
            total_responses=totals.total,
            complete_responses=totals.complete,
            incomplete_responses=totals.total - totals.complete,
            completion_rate=percentage(totals.complete, totals.total),
            average_completion_time=round_half_up(avg_time) if avg_time is not None else 0,
            average_progress=round_half_up(avg_progress, 2) if avg_progress is not None else 0.0
        )

    @staticmethod
    def _rank_areas(ratings: List[RatedAnswerRow]) -> List[str]:
        scores = defaultdict(list)
        for row in ratings:
            scores[row.area].append(row.rating_score)
        means = {area: sum(values) / len(values) for area, values in scores.items()}
        return sorted(means, key=lambda area: (-means[area], area))

    def calculate_questionnaire_kpis(self, responses: ResponseStatistics,
                                     questions: Dict[int, AnswerStatistics],
                                     ratings: List[RatedAnswerRow]) -> QuestionnaireKPIs:
        """
        Headline numbers for a questionnaire:
        - average_rating: mean of the per-question averages that are above 0
        - response_quality_score: mean of the completion rate and the average valid rate
        - engagement_score: response volume against engagement_target_responses, capped at 100
        - best_area / worst_area: highest and lowest mean rating per area
        """
        rated = [s.average_rating for s in questions.values() if s.average_rating > 0]
        average_rating = sum(rated) / len(rated) if rated else 0.0

        valid_rate = sum(s.valid_rate for s in questions.values()) / len(questions) if questions else 0.0
        quality = (responses.completion_rate + valid_rate) / 2

        engagement = min(100.0, responses.total_responses / self.settings.engagement_target_responses * 100)

        areas = self._rank_areas(ratings)

        return QuestionnaireKPIs(
            average_rating=round_half_up(average_rating, 2),
            response_quality_score=round_half_up(quality, 2),
            engagement_score=round_half_up(engagement),
            total_responses=responses.total_responses,
            completion_rate=responses.completion_rate,
            best_area=areas[0] if areas else None,
            worst_area=areas[-1] if areas else None,
            area_count=len(areas)
        )

    def get_questionnaire_statistics(self, questionnaire_id: int) -> QuestionnaireStatistics:
        """Response totals, per-question statistics and distributions, QR code activity and KPIs."""
        self.responses.get_questionnaire(questionnaire_id)
        question_ids = self.answers.list_question_ids(questionnaire_id)

        responses = self.get_response_statistics(questionnaire_id)
        questions = self.get_batch_statistics(question_ids)
        ratings = self.responses.find_rated_answers(questionnaire_id)

        logger.info(f"[STATS] Questionnaire {questionnaire_id}: {len(question_ids)} questions, "
                    f"{responses.total_responses} responses")

        return QuestionnaireStatistics(
            questionnaire_id=questionnaire_id,
            responses=responses,
            questions=questions,
            distributions=self.get_batch_distributions(question_ids),
            qr_codes=self.responses.list_qr_code_activity(questionnaire_id),
            kpis=self.calculate_questionnaire_kpis(responses, questions, ratings)
        )
