# schemas.py
# Pydantic models for request/response validation and serialization.

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field


class Token(BaseModel):
    access_token: str
    token_type: str


class SubmissionToken(BaseModel):
    action: str
    token: str


class PasswordSetupRequest(BaseModel):
    token: str
    password: str = Field(..., min_length=8)


class ApplicationSubmission(BaseModel):
    """Raw public form input; field rules are checked by the service so every error is reported at once."""
    applicant_email: str = ""
    applicant_first_name: str = ""
    applicant_middle_name: Optional[str] = None
    applicant_last_name: str = ""
    address_line_1: str = ""
    address_line_2: Optional[str] = None
    suburb: str = ""
    state: str = ""
    postcode: str = ""
    phone: Optional[str] = None
    mobile: Optional[str] = None
    employer: Optional[str] = None
    job_position: Optional[str] = None
    membership_type: str = ""
    nomination_status: str = "self_nominated"
    nominating_member_number: Optional[str] = None
    nominating_member_name: Optional[str] = None
    signature_text: str = ""
    application_notes: Optional[str] = None
    # Honeypot, must stay empty
    website: Optional[str] = None


class DecisionRequest(BaseModel):
    decision: str


class VoteRequest(BaseModel):
    vote: str
    comment: Optional[str] = None


class Application(BaseModel):
    id: int
    public_token: Optional[str] = None
    applicant_email: str
    applicant_first_name: str
    applicant_last_name: str
    membership_type: str
    status: str
    submitted_at: Optional[datetime] = None
    preapproval_at: Optional[datetime] = None
    board_finalised_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Vote(BaseModel):
    director_id: int
    vote: str
    viewed_at: Optional[datetime] = None
    last_viewed_at: Optional[datetime] = None
    voted_at: Optional[datetime] = None
    note: Optional[str] = None

    class Config:
        from_attributes = True


class BoardApplication(BaseModel):
    application: Application
    my_vote: Optional[Vote] = None


class ReminderResult(BaseModel):
    non_responder_count: int
    sent_count: int


class BoardOutcome(BaseModel):
    finalized: bool
    status: str
    approvals: int = 0
    rejections: int = 0


class Subscription(BaseModel):
    id: int
    member_id: int
    membership_year: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    amount_due: Decimal
    amount_paid: Decimal
    status: str
    due_date: Optional[date] = None
    grace_until: Optional[date] = None

    class Config:
        from_attributes = True


class ReconcileResult(BaseModel):
    payment_id: Optional[int] = None
    member_id: int
    subscription_id: int
    membership_number: Optional[str] = None
    email_sent: bool = False
    already_paid: bool = False


class MarkPaidRequest(BaseModel):
    reference: Optional[str] = None


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None


class PayPalOrder(BaseModel):
    order_id: str
    status: Optional[str] = None


class DirectorCreate(BaseModel):
    email: EmailStr
    full_name: str = Field(..., min_length=1)


class Director(BaseModel):
    id: int
    email: str
    full_name: Optional[str] = None
    director_disabled: bool

    class Config:
        from_attributes = True


class ImportReport(BaseModel):
    processed: int = 0
    created: int = 0
    created_users: int = 0
    duplicates: List[str] = []
    errors: List[str] = []


class MaintenanceReport(BaseModel):
    renewals_created: int = 0
    marked_overdue: int = 0
    marked_lapsed: int = 0


# -----------------------
#  STAFF VIEWS
# -----------------------
class ActivityEntry(BaseModel):
    id: int
    event_type: str
    context: Optional[Dict[str, Any]] = None
    application_id: Optional[int] = None
    member_id: Optional[int] = None
    actor_user_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ApplicationListing(BaseModel):
    status_counts: Dict[str, int]
    applications: List[Application]


class ApplicationRecord(Application):
    """Every field the applicant submitted"""
    applicant_middle_name: Optional[str] = None
    address_line_1: str
    address_line_2: Optional[str] = None
    suburb: str
    state: str
    postcode: str
    phone: Optional[str] = None
    mobile: Optional[str] = None
    employer: Optional[str] = None
    job_position: Optional[str] = None
    nomination_status: str
    nominating_member_number: Optional[str] = None
    nominating_member_name: Optional[str] = None
    signature_text: str
    application_notes: Optional[str] = None
    preapproval_officer_id: Optional[int] = None


class VoteRow(BaseModel):
    director_id: int
    director_name: Optional[str] = None
    director_email: Optional[str] = None
    vote: str
    viewed_at: Optional[datetime] = None
    voted_at: Optional[datetime] = None
    note: Optional[str] = None
    reset_by: Optional[int] = None
    reset_by_name: Optional[str] = None
    reset_at: Optional[datetime] = None


class ApplicationFileInfo(BaseModel):
    id: int
    file_label: str
    original_filename: str
    mime_type: Optional[str] = None
    file_size_bytes: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ApplicationDetail(BaseModel):
    application: ApplicationRecord
    votes: List[VoteRow]
    files: List[ApplicationFileInfo]
    activity: List[ActivityEntry]


class MemberSummary(BaseModel):
    id: int
    membership_number: Optional[str] = None
    membership_type: str
    status: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    application_id: Optional[int] = None
    approved_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    lapsed_at: Optional[datetime] = None
    subscription_status: Optional[str] = None
    membership_year: Optional[int] = None


class Payment(BaseModel):
    id: int
    subscription_id: Optional[int] = None
    amount: Decimal
    currency: str
    payment_method: str
    gateway: str
    gateway_transaction_id: Optional[str] = None
    status: str
    reference: Optional[str] = None
    received_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MemberDetail(BaseModel):
    member: MemberSummary
    latest_subscription: Optional[Subscription] = None
    payments: List[Payment]
    activity: List[ActivityEntry]


class SubscriptionRow(BaseModel):
    subscription_id: int
    subscription_status: str
    membership_year: int
    amount_due: Decimal
    amount_paid: Decimal
    paid_at: Optional[datetime] = None
    member_id: int
    membership_number: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    last_payment_reference: Optional[str] = None


class DashboardTiles(BaseModel):
    pending_preapproval: int = 0
    pending_board_approval: int = 0
    payment_pending: int = 0
    overdue_within_grace: int = 0


class AttentionItem(BaseModel):
    priority: int
    type: str
    label: str
    detail: str
    age_days: int
    application_id: Optional[int] = None
    subscription_id: Optional[int] = None


class Dashboard(BaseModel):
    tiles: DashboardTiles
    needs_attention: List[AttentionItem]
    recent_activity: List[ActivityEntry]
