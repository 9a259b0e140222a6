from __future__ import annotations

from ..extensions import db
from grc_app.time_utils import to_utc_z


QUALIFICATION_STATUSES = ("in_progress", "receipts_complete", "qualified", "pending_review", "forfeited")


class MonthlyQualification(db.Model):
    """
    One calendar month's progress for one (member, certificate) pair.

    approved_total_cents only grows, and only through an atomic SQL increment
    (see qualification_service.record_approval). open_review_count counts
    approved flagged receipts awaiting admin confirmation; while it is > 0
    the period sits in 'pending_review'.
    """
    __tablename__ = "monthly_qualifications"
    __table_args__ = (
        db.UniqueConstraint("member_id", "certificate_id", "year", "month", name="uq_qualifications_period"),
        db.Index("ix_qualifications_status_reward", "status", "reward_sent_at"),
        db.CheckConstraint("approved_total_cents >= 0", name="ck_qualifications_total_non_negative"),
        db.CheckConstraint("month BETWEEN 1 AND 12", name="ck_qualifications_month_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)
    certificate_id = db.Column(db.Integer, db.ForeignKey("certificates.id"), nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)

    approved_total_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="in_progress", index=True)
    open_review_count = db.Column(db.Integer, nullable=False, default=0)

    survey_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    qualified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    forfeited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    forfeit_reason = db.Column(db.String(255), nullable=True)

    reward_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reward_tracking_code = db.Column(db.String(100), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    member = db.relationship("Member")
    certificate = db.relationship("Certificate", backref=db.backref("qualifications", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "certificate_id": self.certificate_id,
            "year": self.year,
            "month": self.month,
            "approved_total_cents": self.approved_total_cents,
            "status": self.status,
            "open_review_count": self.open_review_count,
            "survey_completed_at": to_utc_z(self.survey_completed_at),
            "qualified_at": to_utc_z(self.qualified_at),
            "forfeited_at": to_utc_z(self.forfeited_at),
            "forfeit_reason": self.forfeit_reason,
            "reward_sent_at": to_utc_z(self.reward_sent_at),
            "reward_tracking_code": self.reward_tracking_code,
        }


class Survey(db.Model):
    """A merchant survey. The merchant's active survey gates monthly qualification."""
    __tablename__ = "surveys"
    __table_args__ = (
        db.Index("ix_surveys_merchant_active", "merchant_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    questions = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "title": self.title,
            "questions": self.questions,
            "is_active": self.is_active,
        }


class SurveyResponse(db.Model):
    """
    Answers to a survey. month/year are NULL for the registration survey and
    set for monthly surveys (one per survey/member/month).
    """
    __tablename__ = "survey_responses"
    __table_args__ = (
        db.UniqueConstraint("survey_id", "member_id", "year", "month", name="uq_survey_responses_month"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    survey_id = db.Column(db.Integer, db.ForeignKey("surveys.id"), nullable=False, index=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)
    certificate_id = db.Column(db.Integer, db.ForeignKey("certificates.id"), nullable=True)
    year = db.Column(db.Integer, nullable=True)
    month = db.Column(db.Integer, nullable=True)
    answers = db.Column(db.JSON, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "survey_id": self.survey_id,
            "member_id": self.member_id,
            "certificate_id": self.certificate_id,
            "year": self.year,
            "month": self.month,
            "answers": self.answers,
            "created_at": to_utc_z(self.created_at),
        }


class MerchantReview(db.Model):
    """Review written at registration; long enough reviews earn a bonus month."""
    __tablename__ = "merchant_reviews"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)
    certificate_id = db.Column(db.Integer, db.ForeignKey("certificates.id"), nullable=False)
    content = db.Column(db.Text, nullable=False)
    word_count = db.Column(db.Integer, nullable=False)
    bonus_month_awarded = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
