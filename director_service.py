"""
Director Service - Board director roster management
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from activity_log_service import ActivityLogger
from auth_utils import password_setup_link
from board_decision_service import BoardDecisionService
from config import MembershipPolicy
from exceptions import InvalidState, NotFound
from models import MembershipRole, User
from notification_templates import DirectorInvited
from ses_service import Mailer

log = logging.getLogger(__name__)


class DirectorService:

    @staticmethod
    async def list_directors(db: AsyncSession) -> List[User]:
        result = await db.execute(
            select(User).where(User.role == MembershipRole.DIRECTOR.value).order_by(User.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def add_director(
        db: AsyncSession,
        email: str,
        full_name: str,
        actor_id: Optional[int],
        policy: MembershipPolicy,
        mailer: Mailer,
    ) -> User:
        """Create or reuse the identity for ``email`` and give it the director role."""
        email = (email or "").strip().lower()
        full_name = (full_name or "").strip()
        if not email or not full_name:
            raise InvalidState("Name and email are required")

        first_name, _, last_name = full_name.partition(" ")
        user = await crud.get_or_create_user(db, email, first_name, last_name or None)
        if not user.full_name or user.full_name == email:
            user.full_name = full_name
        user.director_disabled = False
        await BoardDecisionService.assign_role(db, user, MembershipRole.DIRECTOR, actor_id)
        await ActivityLogger.log_event(db, "director_added", {
            "user_id": user.id,
            "email": email,
        }, actor_id=actor_id)
        await db.commit()
        log.info(f"Director {email} added by user {actor_id}")

        await mailer.send_notification(email, DirectorInvited(
            director_name=user.full_name,
            password_setup_link=password_setup_link(policy.password_setup_url, email),
        ))
        return user

    @staticmethod
    async def get_director(db: AsyncSession, user_id: int) -> User:
        user = await crud.get_user(db, user_id)
        if user is None or user.role != MembershipRole.DIRECTOR.value:
            raise NotFound(f"Director {user_id} not found")
        return user

    @staticmethod
    async def set_director_disabled(
        db: AsyncSession,
        user_id: int,
        disabled: bool,
        actor_id: Optional[int],
    ) -> User:
        user = await DirectorService.get_director(db, user_id)
        user.director_disabled = bool(disabled)
        await ActivityLogger.log_event(db, "director_disabled" if disabled else "director_enabled", {
            "user_id": user.id,
        }, actor_id=actor_id)
        await db.commit()
        log.info(f"Director {user_id} {'disabled' if disabled else 'enabled'} by user {actor_id}")
        return user
