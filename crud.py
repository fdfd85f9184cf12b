# crud.py
# Lookup helpers shared by the lifecycle services.

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import models
from auth_utils import get_password_hash, generate_unusable_password
from exceptions import NotFound


async def get_user(db: AsyncSession, user_id: int) -> Optional[models.User]:
    result = await db.execute(select(models.User).filter(models.User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[models.User]:
    result = await db.execute(select(models.User).filter(models.User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def get_or_create_user(
    db: AsyncSession,
    email: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> models.User:
    """Reuse the identity registered under ``email`` or create one with an unusable password."""
    user = await get_user_by_email(db, email)
    if user is not None:
        return user
    full_name = " ".join(p for p in (first_name, last_name) if p) or email
    user = models.User(
        email=email.strip().lower(),
        full_name=full_name,
        first_name=first_name,
        last_name=last_name,
        hashed_password=get_password_hash(generate_unusable_password()),
        is_active=True,
    )
    db.add(user)
    await db.flush()
    return user


async def get_application(db: AsyncSession, application_id: int) -> models.Application:
    # Conditional status updates bypass the identity map
    result = await db.execute(
        select(models.Application)
        .filter(models.Application.id == application_id)
        .execution_options(populate_existing=True)
    )
    application = result.scalar_one_or_none()
    if application is None:
        raise NotFound(f"Application {application_id} not found")
    return application


async def get_member(db: AsyncSession, member_id: int) -> Optional[models.Member]:
    result = await db.execute(select(models.Member).filter(models.Member.id == member_id))
    return result.scalar_one_or_none()


async def get_member_by_user(db: AsyncSession, user_id: int) -> Optional[models.Member]:
    result = await db.execute(select(models.Member).filter(models.Member.user_id == user_id))
    return result.scalar_one_or_none()


async def get_member_by_number(db: AsyncSession, membership_number: str) -> Optional[models.Member]:
    result = await db.execute(
        select(models.Member).filter(models.Member.membership_number == membership_number)
    )
    return result.scalar_one_or_none()


async def get_subscription(db: AsyncSession, subscription_id: int) -> Optional[models.Subscription]:
    result = await db.execute(
        select(models.Subscription)
        .filter(models.Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_subscription_for_year(db: AsyncSession, member_id: int, year: int) -> Optional[models.Subscription]:
    result = await db.execute(
        select(models.Subscription).filter(
            models.Subscription.member_id == member_id,
            models.Subscription.membership_year == year,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_vote(db: AsyncSession, application_id: int, director_id: int) -> Optional[models.ApplicationVote]:
    result = await db.execute(
        select(models.ApplicationVote).filter(
            models.ApplicationVote.application_id == application_id,
            models.ApplicationVote.director_id == director_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_votes(db: AsyncSession, application_id: int) -> List[models.ApplicationVote]:
    result = await db.execute(
        select(models.ApplicationVote)
        .filter(models.ApplicationVote.application_id == application_id)
        .order_by(models.ApplicationVote.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_enabled_directors(db: AsyncSession) -> List[models.User]:
    result = await db.execute(
        select(models.User)
        .filter(
            models.User.role == models.MembershipRole.DIRECTOR.value,
            models.User.director_disabled.is_(False),
        )
        .order_by(models.User.id)
    )
    return list(result.scalars().all())


async def get_officer_emails(db: AsyncSession) -> List[str]:
    result = await db.execute(
        select(models.User.email).filter(models.User.is_officer.is_(True))
    )
    return sorted({email for email in result.scalars().all() if email})


async def get_payment_by_reference(db: AsyncSession, gateway_reference: str) -> Optional[models.Payment]:
    result = await db.execute(
        select(models.Payment).filter(models.Payment.gateway_transaction_id == gateway_reference)
    )
    return result.scalar_one_or_none()


async def get_setting(db: AsyncSession, key: str) -> Optional[str]:
    result = await db.execute(select(models.AppSetting.value).filter(models.AppSetting.key == key))
    return result.scalar_one_or_none()


async def set_setting(db: AsyncSession, key: str, value: str) -> None:
    result = await db.execute(select(models.AppSetting).filter(models.AppSetting.key == key))
    row = result.scalar_one_or_none()
    if row is None:
        db.add(models.AppSetting(key=key, value=value))
    else:
        row.value = value
    await db.flush()
