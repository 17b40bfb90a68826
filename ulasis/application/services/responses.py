import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError

from ulasis.extensions import db
from ulasis.domain.models import Questionnaire, Question, QRCode, Response, Answer
from ulasis.domain.schemas import AnswerSubmission, ResponseSubmission, AnswerDetail, ResponseDetail
from ulasis.domain.exceptions import NotFoundError, InvariantViolationError
from ulasis.domain.metrics import round_half_up
from ulasis.application.services.validation import AnswerValidator

logger = logging.getLogger(__name__)


class ResponseService:
    """
    Write side of the questionnaire form: creates responses, appends answers and
    keeps progress_percentage / is_complete in line with the stored answers.
    """

    @staticmethod
    def compute_progress(answered: int, total_questions: int) -> Tuple[float, bool]:
        """
        Returns (percentage, is_complete).
        7 of 10 -> (70.0, False); 0 questions -> (0.0, False).
        """
        if not total_questions or total_questions <= 0:
            return 0.0, False
        progress = min(round_half_up(answered / total_questions * 100, 2), 100.0)
        return progress, progress >= 100

    @staticmethod
    def _get_response(response_id: int) -> Response:
        response = db.session.get(Response, response_id)
        if response is None or response.deleted_at is not None:
            raise NotFoundError('Response', response_id)
        return response

    @staticmethod
    def _count_questions(questionnaire_id: int) -> int:
        return Question.query.filter(
            Question.questionnaire_id == questionnaire_id,
            Question.deleted_at.is_(None)
        ).count()

    @classmethod
    def _recompute(cls, response: Response, total_questions: Optional[int] = None) -> Response:
        # Always recount; never increment, so retries cannot drift the value
        answered = Answer.query.filter(
            Answer.response_id == response.id,
            Answer.is_skipped.is_(False),
            Answer.deleted_at.is_(None)
        ).count()

        if total_questions is None:
            total_questions = cls._count_questions(response.questionnaire_id)

        progress, complete = cls.compute_progress(answered, total_questions)
        response.progress_percentage = progress
        response.is_complete = complete
        return response

    @classmethod
    def update_progress(cls, response_id: int, total_questions: Optional[int] = None) -> ResponseDetail:
        response = cls._get_response(response_id)
        cls._recompute(response, total_questions)
        db.session.commit()
        return ResponseDetail.model_validate(response)

    @staticmethod
    def _has_answer(response_id: int, question_id: int) -> bool:
        return Answer.query.filter_by(response_id=response_id, question_id=question_id).first() is not None

    @classmethod
    def _add_answer(cls, response: Response, payload: AnswerSubmission) -> Answer:
        question = db.session.get(Question, payload.question_id)
        if (question is None or question.deleted_at is not None
                or question.questionnaire_id != response.questionnaire_id):
            raise NotFoundError('Question', payload.question_id)

        if cls._has_answer(response.id, question.id):
            raise InvariantViolationError(
                f"Response {response.id} already has an answer for question {question.id}"
            )

        outcome = AnswerValidator.validate(payload, question)
        answer = Answer(
            response_id=response.id,
            question_id=question.id,
            answer_value=payload.answer_value,
            rating_score=payload.rating_score,
            selected_options=payload.selected_options,
            is_skipped=payload.is_skipped,
            skip_reason=payload.skip_reason,
            validation_status=outcome.status,
            validation_errors=outcome.errors
        )
        db.session.add(answer)

        try:
            db.session.flush()
        except IntegrityError as e:
            # Lost a race against a concurrent submission of the same pair
            raise InvariantViolationError(
                f"Response {response.id} already has an answer for question {question.id}"
            ) from e

        if outcome.errors:
            logger.info(f"[SUBMIT] Answer {answer.id} stored as invalid: {outcome.errors}")
        return answer

    @classmethod
    def create_response(cls, questionnaire_id: int, payload: ResponseSubmission) -> ResponseDetail:
        """Creates the response, appends every answer and recomputes progress once."""
        questionnaire = db.session.get(Questionnaire, questionnaire_id)
        if questionnaire is None or questionnaire.deleted_at is not None or not questionnaire.is_active:
            raise NotFoundError('Questionnaire', questionnaire_id)

        if payload.qr_code_id is not None:
            qr_code = db.session.get(QRCode, payload.qr_code_id)
            if qr_code is None or qr_code.questionnaire_id != questionnaire_id:
                raise NotFoundError('QRCode', payload.qr_code_id)

        try:
            response = Response(
                questionnaire_id=questionnaire_id,
                qr_code_id=payload.qr_code_id,
                device_fingerprint=payload.device_fingerprint,
                completion_time=payload.completion_time,
                response_date=payload.response_date or datetime.utcnow(),
                progress_percentage=0,
                is_complete=False
            )
            db.session.add(response)
            db.session.flush()

            for answer_payload in payload.answers:
                cls._add_answer(response, answer_payload)

            cls._recompute(response)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"[SUBMIT] Response {response.id} created with {len(payload.answers)} answers "
                    f"({response.progress_percentage}% complete)")
        return ResponseDetail.model_validate(response)

    @classmethod
    def submit_answer(cls, response_id: int, payload: AnswerSubmission) -> AnswerDetail:
        response = cls._get_response(response_id)

        try:
            answer = cls._add_answer(response, payload)
            cls._recompute(response)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        return AnswerDetail.model_validate(answer)

    @classmethod
    def soft_delete_response(cls, response_id: int) -> None:
        """Marks the response and its answers as deleted. Rows are kept."""
        response = cls._get_response(response_id)
        now = datetime.utcnow()

        response.deleted_at = now
        Answer.query.filter(
            Answer.response_id == response.id,
            Answer.deleted_at.is_(None)
        ).update({Answer.deleted_at: now}, synchronize_session=False)

        db.session.commit()
        logger.info(f"[DELETE] Response {response_id} soft-deleted")
