from datetime import datetime
from ulasis.extensions import db


PERIOD_TYPES = ('day', 'week', 'month', 'year')


class Questionnaire(db.Model):
    """
    A survey owned by a business.
    category_mapping optionally maps a question category to an improvement
    area, e.g. {"staff": {"improvementArea": "Service"}}.
    """
    __tablename__ = 'questionnaires'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    category_mapping = db.Column(db.JSON, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    deleted_at = db.Column(db.DateTime, nullable=True)

    questions = db.relationship('Question', backref='questionnaire', lazy='dynamic')
    responses = db.relationship('Response', backref='questionnaire', lazy='dynamic')
    qr_codes = db.relationship('QRCode', backref='questionnaire', lazy='dynamic')

    def __repr__(self):
        return f'<Questionnaire {self.id} {self.title}>'


class Question(db.Model):
    """
    A single prompt. `category` is the label answers are grouped by ("area").
    """
    __tablename__ = 'questions'

    id = db.Column(db.Integer, primary_key=True)
    # INDEX: Every aggregation is scoped to one questionnaire
    questionnaire_id = db.Column(db.Integer, db.ForeignKey('questionnaires.id'), nullable=False, index=True)

    question_text = db.Column(db.Text, nullable=False)
    question_type = db.Column(db.String(30), nullable=False, default='rating')
    category = db.Column(db.String(255), index=True)
    is_required = db.Column(db.Boolean, nullable=False, default=False)
    order_index = db.Column(db.Integer, default=0)
    options = db.Column(db.JSON, default=list)

    # Numeric bounds (rating / number) and text limit
    min_value = db.Column(db.Numeric(10, 2))
    max_value = db.Column(db.Numeric(10, 2))
    max_length = db.Column(db.Integer)

    deleted_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<Question {self.id} ({self.question_type})>'


class QRCode(db.Model):
    """
    Distribution channel for a questionnaire.
    scan_count is maintained by the scan-tracking collaborator and only read here.
    """
    __tablename__ = 'qr_codes'

    id = db.Column(db.Integer, primary_key=True)
    questionnaire_id = db.Column(db.Integer, db.ForeignKey('questionnaires.id'), nullable=False, index=True)
    location_tag = db.Column(db.String(255))
    scan_count = db.Column(db.Integer, nullable=False, default=0)
    unique_scans = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self):
        return f'<QRCode {self.id} scans={self.scan_count}>'


class Response(db.Model):
    """
    One (possibly partial) anonymous submission of a questionnaire.
    Never hard-deleted; deleted_at marks soft deletion.
    """
    __tablename__ = 'responses'

    id = db.Column(db.Integer, primary_key=True)

    # INDEX: Essential for JOINs
    questionnaire_id = db.Column(db.Integer, db.ForeignKey('questionnaires.id'), nullable=False, index=True)
    qr_code_id = db.Column(db.Integer, db.ForeignKey('qr_codes.id'), nullable=True, index=True)

    # INDEX: Critical for period bucketing
    response_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    device_fingerprint = db.Column(db.String(255), index=True)

    is_complete = db.Column(db.Boolean, nullable=False, default=False)
    progress_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    completion_time = db.Column(db.Integer)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = db.Column(db.DateTime, nullable=True)

    answers = db.relationship('Answer', backref='response', lazy='dynamic')

    __table_args__ = (
        db.Index('idx_responses_questionnaire_date', 'questionnaire_id', 'response_date'),
    )

    def __repr__(self):
        return f'<Response {self.id} Questionnaire:{self.questionnaire_id}>'


class Answer(db.Model):
    """
    A respondent's reply to one question. Immutable once stored.
    """
    __tablename__ = 'answers'

    id = db.Column(db.Integer, primary_key=True)
    response_id = db.Column(db.Integer, db.ForeignKey('responses.id'), nullable=False, index=True)
    question_id = db.Column(db.Integer, db.ForeignKey('questions.id'), nullable=False, index=True)

    answer_value = db.Column(db.Text)
    rating_score = db.Column(db.Numeric(5, 2))
    selected_options = db.Column(db.JSON, default=list)

    is_skipped = db.Column(db.Boolean, nullable=False, default=False)
    skip_reason = db.Column(db.String(255))

    validation_status = db.Column(
        db.Enum('valid', 'invalid', 'pending', name='answer_validation_status'),
        nullable=False, default='valid'
    )
    validation_errors = db.Column(db.JSON, default=list)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    deleted_at = db.Column(db.DateTime, nullable=True)

    question = db.relationship('Question')

    __table_args__ = (
        # One answer per question within a response
        db.UniqueConstraint('response_id', 'question_id', name='uq_answers_response_question'),
        db.Index('idx_answers_valid_by_question', 'question_id', 'validation_status', 'deleted_at'),
    )

    def __repr__(self):
        return f'<Answer Resp:{self.response_id} Question:{self.question_id}>'


# MATERIALIZED ANALYTICS
# Derived from Answer + Response; always recomputable by the period aggregator.

class AnalyticsBreakdown(db.Model):
    """Per-area snapshot of one period."""
    __tablename__ = 'analytics_breakdown'

    id = db.Column(db.Integer, primary_key=True)
    questionnaire_id = db.Column(db.Integer, db.ForeignKey('questionnaires.id'), nullable=False, index=True)
    period_type = db.Column(db.Enum(*PERIOD_TYPES, name='breakdown_period_type'), nullable=False)
    period_date = db.Column(db.Date, nullable=False)
    area = db.Column(db.String(255), nullable=False)

    avg_rating = db.Column(db.Numeric(5, 2))
    responses = db.Column(db.Integer, nullable=False, default=0)
    trend = db.Column(db.Numeric(7, 2))
    status = db.Column(db.Enum('Good', 'Monitor', 'Urgent', name='breakdown_status'), nullable=False, default='Monitor')

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('questionnaire_id', 'period_type', 'period_date', 'area',
                            name='uq_analytics_breakdown_composite'),
    )


class AnalyticsTrend(db.Model):
    """Day-level series inside one period."""
    __tablename__ = 'analytics_trends'

    id = db.Column(db.Integer, primary_key=True)
    questionnaire_id = db.Column(db.Integer, db.ForeignKey('questionnaires.id'), nullable=False, index=True)
    period_type = db.Column(db.Enum(*PERIOD_TYPES, name='trend_period_type'), nullable=False)
    period_date = db.Column(db.Date, nullable=False)
    date = db.Column(db.Date, nullable=False)

    avg_rating = db.Column(db.Numeric(5, 2))
    response_rate = db.Column(db.Numeric(5, 2))
    trend_value = db.Column(db.Numeric(7, 2))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('questionnaire_id', 'period_type', 'period_date', 'date',
                            name='uq_analytics_trends_composite'),
    )


class AnalyticsKPI(db.Model):
    """Area-agnostic rollup of one period."""
    __tablename__ = 'analytics_kpis'

    id = db.Column(db.Integer, primary_key=True)
    questionnaire_id = db.Column(db.Integer, db.ForeignKey('questionnaires.id'), nullable=False, index=True)
    period_type = db.Column(db.Enum(*PERIOD_TYPES, name='kpi_period_type'), nullable=False)
    period_date = db.Column(db.Date, nullable=False)

    total_responses = db.Column(db.Integer, nullable=False, default=0)
    avg_rating = db.Column(db.Numeric(5, 2))
    response_rate = db.Column(db.Numeric(5, 2))
    positive_sentiment = db.Column(db.Numeric(5, 2))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('questionnaire_id', 'period_type', 'period_date',
                            name='uq_analytics_kpis_composite'),
    )
