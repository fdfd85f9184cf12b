"""
Shared fixtures: in-memory SQLite database, recording mailer, local file
storage under tmp_path and factories for users, applications and members.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SITE_ADMIN_PASSWORD"] = ""

from datetime import date
from decimal import Decimal
from typing import List

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models
from application_service import ApplicationService
from auth_utils import get_password_hash
from config import MembershipPolicy
from database import Base
from exceptions import StorageFailure
from file_storage_service import FileStorage, LocalFileStorage
from schemas import ApplicationSubmission
from ses_service import Mailer


class RecordingMailer(Mailer):
    """Keeps every message instead of sending it"""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.sent = []
        self.notifications = []

    async def send(self, to, subject, body):
        recipients = [to] if isinstance(to, str) else list(to)
        self.sent.append({"to": recipients, "subject": subject, "body": body})
        return self.accept

    async def send_notification(self, to, notification):
        self.notifications.append((to, notification))
        return await super().send_notification(to, notification)

    def of_type(self, notification_type) -> List:
        return [(to, n) for to, n in self.notifications if type(n) is notification_type]


class FailingStorage(FileStorage):
    async def store(self, db, application_id, upload, uploaded_by=None):
        raise StorageFailure(f"disk full while writing {upload.filename}")


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def policy():
    """Board of five with a quorum of three"""
    return MembershipPolicy(
        approval_threshold=3,
        rejection_threshold=3,
        bank_transfer_instructions="BSB 062-000 Account 1234 5678",
        site_admin_email="admin@example.org",
    )


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def storage(tmp_path):
    return LocalFileStorage(tmp_path / "uploads")


@pytest.fixture
def failing_storage():
    return FailingStorage()


@pytest.fixture
def make_user(db):
    async def factory(email, role=None, is_officer=False, is_admin=False, director_disabled=False,
                      full_name=None, password="correct-horse-battery"):
        user = models.User(
            email=email,
            full_name=full_name or email.split("@")[0].title(),
            hashed_password=get_password_hash(password),
            role=role,
            is_active=True,
            is_officer=is_officer,
            is_admin=is_admin,
            director_disabled=director_disabled,
        )
        db.add(user)
        await db.commit()
        return user
    return factory


@pytest_asyncio.fixture
async def officer(make_user):
    return await make_user("officer@example.org", is_officer=True, full_name="Olive Officer")


@pytest_asyncio.fixture
async def directors(make_user):
    return [
        await make_user(f"director{i}@example.org", role=models.MembershipRole.DIRECTOR.value,
                        full_name=f"Director {i}")
        for i in range(1, 6)
    ]


@pytest.fixture
def submission():
    def build(**overrides):
        data = {
            "applicant_email": "jane.citizen@example.com",
            "applicant_first_name": "Jane",
            "applicant_last_name": "Citizen",
            "address_line_1": "1 Collins Street",
            "suburb": "Melbourne",
            "state": "VIC",
            "postcode": "3000",
            "mobile": "0400 000 000",
            "membership_type": "associate",
            "nomination_status": "self_nominated",
            "signature_text": "Jane Citizen",
        }
        data.update(overrides)
        return ApplicationSubmission(**data)
    return build


@pytest_asyncio.fixture
async def board_application(db, policy, mailer, storage, officer, directors, submission):
    """An application pre-approved and waiting on the board"""
    application = await ApplicationService.submit(db, submission(), [], policy, mailer, storage)
    await ApplicationService.decide(db, application.id, "preapprove", officer.id, mailer)
    return application


@pytest.fixture
def make_member(db, make_user):
    async def factory(email="member@example.org", member_status=models.MemberStatus.PENDING_PAYMENT.value,
                      role=models.MembershipRole.PENDING_PAYMENT.value, membership_number=None,
                      membership_year=2025, amount_due="72.50", amount_paid="0.00",
                      subscription_status=models.SubscriptionStatus.PENDING_PAYMENT.value,
                      start_date=date(2025, 1, 15), end_date=date(2025, 6, 30), due_date=date(2025, 1, 15),
                      grace_until=None):
        user = await make_user(email, role=role)
        member = models.Member(
            user_id=user.id,
            membership_number=membership_number,
            membership_type="associate",
            status=member_status,
        )
        db.add(member)
        await db.flush()
        subscription = models.Subscription(
            member_id=member.id,
            membership_year=membership_year,
            start_date=start_date,
            end_date=end_date,
            amount_due=Decimal(amount_due),
            amount_paid=Decimal(amount_paid),
            status=subscription_status,
            due_date=due_date,
            grace_until=grace_until,
        )
        db.add(subscription)
        await db.commit()
        return user, member, subscription
    return factory


@pytest.fixture
def count_rows(db):
    async def counter(model, *criteria):
        result = await db.execute(select(func.count()).select_from(model).where(*criteria))
        return result.scalar_one()
    return counter


@pytest.fixture
def events(db):
    """Event types from the activity log, oldest first"""
    async def fetch(**filters):
        query = select(models.ActivityLog.event_type).order_by(models.ActivityLog.id)
        for column, value in filters.items():
            query = query.where(getattr(models.ActivityLog, column) == value)
        result = await db.execute(query)
        return list(result.scalars().all())
    return fetch
