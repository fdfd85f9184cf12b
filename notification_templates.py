# notification_templates.py
# Typed notification events; each renders to an email subject and plain text body.

from datetime import date
from decimal import Decimal
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    site_name: str = "Institute Membership"

    def render(self) -> Tuple[str, str]:
        raise NotImplementedError


def _money(amount: Decimal, currency: str) -> str:
    return f"{currency} {Decimal(amount):.2f}"


class PreapprovalRequested(Notification):
    application_id: int
    applicant_name: str
    membership_type: str
    review_url: str = ""

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: new application #{self.application_id} awaiting pre-approval"
        body = (
            f"A new membership application has been submitted.\n\n"
            f"Applicant: {self.applicant_name}\n"
            f"Membership type: {self.membership_type}\n"
        )
        if self.review_url:
            body += f"\nReview it here: {self.review_url}\n"
        return subject, body


class BoardReviewRequested(Notification):
    application_id: int
    applicant_name: str
    director_name: str = ""
    review_url: str = ""

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: application #{self.application_id} ready for board vote"
        greeting = f"Dear {self.director_name},\n\n" if self.director_name else ""
        body = (
            f"{greeting}The application from {self.applicant_name} has been pre-approved "
            f"and is awaiting your vote.\n"
        )
        if self.review_url:
            body += f"\nCast your vote: {self.review_url}\n"
        return subject, body


class DirectorVoteReminder(BoardReviewRequested):
    def render(self) -> Tuple[str, str]:
        subject = f"Reminder: your vote is needed on application #{self.application_id}"
        _, body = super().render()
        return subject, body


class ApplicationApproved(Notification):
    applicant_name: str
    amount_due: Decimal
    currency: str
    start_date: date
    end_date: date
    password_setup_link: str
    portal_url: str
    bank_transfer_instructions: str = ""

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: your membership application has been approved"
        body = (
            f"Dear {self.applicant_name},\n\n"
            f"Congratulations, the board has approved your application.\n\n"
            f"Set your password: {self.password_setup_link}\n\n"
            f"Amount due: {_money(self.amount_due, self.currency)}\n"
            f"Membership period: {self.start_date.isoformat()} to {self.end_date.isoformat()}\n"
            f"Pay online: {self.portal_url}\n"
        )
        if self.bank_transfer_instructions:
            body += f"\nBank transfer instructions:\n{self.bank_transfer_instructions}\n"
        return subject, body


class ApprovalOfficerNotice(Notification):
    application_id: int
    applicant_name: str
    amount_due: Decimal
    currency: str

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: application #{self.application_id} approved by the board"
        body = (
            f"{self.applicant_name} has been approved and is awaiting payment of "
            f"{_money(self.amount_due, self.currency)}.\n"
        )
        return subject, body


class ApplicationRejectedByBoard(Notification):
    applicant_name: str

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: outcome of your membership application"
        body = (
            f"Dear {self.applicant_name},\n\n"
            f"Thank you for applying. After review the board was unable to approve your application.\n"
        )
        return subject, body


class MembershipActivated(Notification):
    member_name: str
    membership_number: str
    amount: Decimal
    currency: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    portal_url: str

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: welcome, membership {self.membership_number} is active"
        body = (
            f"Dear {self.member_name},\n\n"
            f"We have received your payment of {_money(self.amount, self.currency)}.\n"
            f"Membership number: {self.membership_number}\n"
        )
        if self.start_date and self.end_date:
            body += f"Membership period: {self.start_date.isoformat()} to {self.end_date.isoformat()}\n"
        body += f"\nMember portal: {self.portal_url}\n"
        return subject, body


class RenewalDue(Notification):
    member_name: str
    membership_year: int
    amount_due: Decimal
    currency: str
    due_date: date
    portal_url: str

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: membership renewal for {self.membership_year}"
        body = (
            f"Dear {self.member_name},\n\n"
            f"Your renewal of {_money(self.amount_due, self.currency)} is due on {self.due_date.isoformat()}.\n"
            f"Pay online: {self.portal_url}\n"
        )
        return subject, body


class SubscriptionOverdue(Notification):
    member_name: str
    amount_due: Decimal
    currency: str
    grace_until: date
    portal_url: str

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: your membership payment is overdue"
        body = (
            f"Dear {self.member_name},\n\n"
            f"Your membership payment of {_money(self.amount_due, self.currency)} is overdue. "
            f"Your membership stays current until {self.grace_until.isoformat()}.\n"
            f"Pay online: {self.portal_url}\n"
        )
        return subject, body


class MembershipLapsed(Notification):
    member_name: str
    portal_url: str

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: your membership has lapsed"
        body = (
            f"Dear {self.member_name},\n\n"
            f"The grace period for your membership payment has ended and your membership has lapsed.\n"
            f"You can reinstate it by paying online: {self.portal_url}\n"
        )
        return subject, body


class DirectorInvited(Notification):
    director_name: str
    password_setup_link: str

    def render(self) -> Tuple[str, str]:
        subject = f"{self.site_name}: board director access"
        body = (
            f"Dear {self.director_name},\n\n"
            f"You have been added as a board director. Set your password: {self.password_setup_link}\n"
        )
        return subject, body
