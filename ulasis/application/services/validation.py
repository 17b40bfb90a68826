import math
from typing import List

from pydantic import BaseModel, EmailStr, TypeAdapter, ValidationError

from ulasis.domain.schemas import AnswerSubmission

_email_adapter = TypeAdapter(EmailStr)


class ValidationOutcome(BaseModel):
    errors: List[str] = []

    @property
    def status(self) -> str:
        return 'invalid' if self.errors else 'valid'


class AnswerValidator:
    """
    Checks a submitted answer against its question definition.
    Invalid answers are still stored; the outcome only drives validation_status.
    """

    @staticmethod
    def _is_blank(value) -> bool:
        return value is None or str(value).strip() == ''

    @staticmethod
    def _bound(value):
        # A falsy bound (None or 0) means no bound
        return float(value) if value else None

    @classmethod
    def _check_range(cls, number: float, question, label: str, errors: List[str]):
        if not math.isfinite(number):
            errors.append(f"{label} must be a finite number")
            return
        minimum = cls._bound(question.min_value)
        maximum = cls._bound(question.max_value)
        if minimum is not None and number < minimum:
            errors.append(f"{label} must be at least {minimum:g}")
        if maximum is not None and number > maximum:
            errors.append(f"{label} must be at most {maximum:g}")

    @classmethod
    def validate(cls, answer: AnswerSubmission, question) -> ValidationOutcome:
        errors: List[str] = []
        required = bool(question.is_required)

        if answer.is_skipped:
            if required:
                errors.append("Required question cannot be skipped")
            return ValidationOutcome(errors=errors)

        qtype = question.question_type
        value = answer.answer_value
        options = answer.selected_options

        if qtype in ('text', 'textarea'):
            if cls._is_blank(value):
                if required:
                    errors.append("Text answer is required")
            elif question.max_length and len(value) > question.max_length:
                errors.append(f"Answer exceeds maximum length of {question.max_length} characters")

        elif qtype == 'single_choice':
            if not options:
                if required:
                    errors.append("Single choice selection is required")
            elif len(options) > 1:
                errors.append("Single choice question can only have one selection")

        elif qtype == 'multiple_choice':
            if not options and required:
                errors.append("Multiple choice selection is required")

        elif qtype == 'rating':
            if answer.rating_score is None:
                if required:
                    errors.append("Rating score is required")
            else:
                cls._check_range(answer.rating_score, question, "Rating", errors)

        elif qtype == 'number':
            if cls._is_blank(value):
                if required:
                    errors.append("Number answer is required")
            else:
                try:
                    number = float(value)
                except ValueError:
                    errors.append("Answer must be a valid number")
                else:
                    cls._check_range(number, question, "Number", errors)

        elif qtype == 'email':
            if cls._is_blank(value):
                if required:
                    errors.append("Email address is required")
            else:
                try:
                    _email_adapter.validate_python(value.strip())
                except ValidationError:
                    errors.append("Invalid email address format")

        elif qtype == 'yes_no':
            if value is None:
                if required:
                    errors.append("Yes/No answer is required")
            elif value.strip().lower() not in ('yes', 'no'):
                errors.append("Answer must be 'yes' or 'no'")

        return ValidationOutcome(errors=errors)
