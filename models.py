# models.py
# SQLAlchemy models for identities, applications, votes, members, subscriptions and payments.

from enum import Enum
import uuid

from sqlalchemy import Boolean, Column, Integer, String, DateTime, Date, ForeignKey, Numeric, Text, JSON, UniqueConstraint, Index
from sqlalchemy.sql import func

from database import Base


class MembershipRole(str, Enum):
    APPLICANT = "applicant"
    DIRECTOR = "director"
    MEMBER = "member"
    PENDING_PAYMENT = "pending_payment"


class ApplicationStatus(str, Enum):
    PENDING_PREAPPROVAL = "pending_preapproval"
    REJECTED_PREAPPROVAL = "rejected_preapproval"
    PENDING_BOARD_APPROVAL = "pending_board_approval"
    APPROVED = "approved"
    REJECTED_BOARD = "rejected_board"


class VoteChoice(str, Enum):
    UNANSWERED = "unanswered"
    APPROVED = "approved"
    REJECTED = "rejected"


class MemberStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    LAPSED = "lapsed"


class SubscriptionStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    OVERDUE = "overdue"
    LAPSED = "lapsed"
    ACTIVE = "active"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class MembershipType(str, Enum):
    ASSOCIATE = "associate"
    CORPORATE = "corporate"
    SENIOR = "senior"


class NominationStatus(str, Enum):
    SELF_NOMINATED = "self_nominated"
    NOMINATED_BY_MEMBER = "nominated_by_member"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    hashed_password = Column(String)
    # STATES: applicant, director, member, pending_payment (NULL for staff-only accounts)
    role = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, default=True)
    is_officer = Column(Boolean, default=False)
    is_admin = Column(Boolean, default=False)
    director_disabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Application(Base):
    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, index=True)
    public_token = Column(String, unique=True, index=True, default=lambda: uuid.uuid4().hex)
    applicant_email = Column(String, index=True, nullable=False)
    applicant_first_name = Column(String, nullable=False)
    applicant_middle_name = Column(String, nullable=True)
    applicant_last_name = Column(String, nullable=False)
    address_line_1 = Column(String, nullable=False)
    address_line_2 = Column(String, nullable=True)
    suburb = Column(String, nullable=False)
    state = Column(String(8), nullable=False)
    postcode = Column(String(16), nullable=False)
    phone = Column(String, nullable=True)
    mobile = Column(String, nullable=True)
    employer = Column(String, nullable=True)
    job_position = Column(String, nullable=True)
    nomination_status = Column(String, default=NominationStatus.SELF_NOMINATED.value, nullable=False)
    nominating_member_number = Column(String, nullable=True)
    nominating_member_name = Column(String, nullable=True)
    signature_text = Column(String, nullable=False)
    application_notes = Column(Text, nullable=True)
    membership_type = Column(String, default=MembershipType.ASSOCIATE.value, nullable=False)
    # Monotonic: pending_preapproval -> pending_board_approval -> approved | rejected_board,
    # or pending_preapproval -> rejected_preapproval
    status = Column(String, default=ApplicationStatus.PENDING_PREAPPROVAL.value, nullable=False, index=True)
    submitted_at = Column(DateTime(timezone=True), server_default=func.now())
    preapproval_officer_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    preapproval_at = Column(DateTime(timezone=True), nullable=True)
    board_finalised_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def applicant_full_name(self) -> str:
        parts = [self.applicant_first_name, self.applicant_middle_name, self.applicant_last_name]
        return " ".join(p for p in parts if p)


class ApplicationFile(Base):
    __tablename__ = "application_files"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False, index=True)
    file_label = Column(String, nullable=False)
    original_filename = Column(String, nullable=False)
    storage_filename = Column(String, unique=True, nullable=False)
    mime_type = Column(String, nullable=True)
    file_size_bytes = Column(Integer, default=0, nullable=False)
    uploaded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ApplicationVote(Base):
    __tablename__ = "application_votes"
    __table_args__ = (
        UniqueConstraint("application_id", "director_id", name="uq_vote_application_director"),
    )

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False, index=True)
    director_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vote = Column(String, default=VoteChoice.UNANSWERED.value, nullable=False)
    viewed_at = Column(DateTime(timezone=True), nullable=True)
    last_viewed_at = Column(DateTime(timezone=True), nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    voted_at = Column(DateTime(timezone=True), nullable=True)
    note = Column(Text, nullable=True)
    reset_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reset_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=True)
    # Assigned once on first activation, never changed afterwards
    membership_number = Column(String, unique=True, index=True, nullable=True)
    membership_type = Column(String, default=MembershipType.ASSOCIATE.value, nullable=False)
    status = Column(String, default=MemberStatus.PENDING_PAYMENT.value, nullable=False, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    lapsed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("member_id", "membership_year", name="uq_subscription_member_year"),
        Index("ix_subscriptions_status_due", "status", "due_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    membership_year = Column(Integer, nullable=False)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    amount_due = Column(Numeric(10, 2), default=0, nullable=False)
    amount_paid = Column(Numeric(10, 2), default=0, nullable=False)
    status = Column(String, default=SubscriptionStatus.PENDING_PAYMENT.value, nullable=False)
    due_date = Column(Date, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    grace_until = Column(Date, nullable=True)
    # Maintenance date a renewal was issued on; null for first-year subscriptions
    issued_on = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="AUD", nullable=False)
    payment_method = Column(String, nullable=False)
    gateway = Column(String, nullable=False)
    # Idempotency key for gateway deliveries; NULL for manual entries
    gateway_transaction_id = Column(String, unique=True, nullable=True)
    status = Column(String, default=PaymentStatus.PENDING.value, nullable=False)
    reference = Column(String, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class ActivityLog(Base):
    """Append-only audit trail. Rows are never updated or deleted."""
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, nullable=False, index=True)
    context = Column(JSON, nullable=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=True, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=True, index=True)
    actor_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
