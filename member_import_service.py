"""
Member Import Service - Onboards existing members from a CSV export

Each row creates (or reuses) the identity, an active Member carrying the
given membership number and an active, fully paid Subscription for the
given membership year. Existing membership numbers and identities that are
already members are reported as duplicates and left untouched.
"""

import io
import logging
import re
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Union

import pandas as pd
from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from activity_log_service import ActivityLogger
from board_decision_service import BoardDecisionService
from config import MembershipPolicy
from exceptions import ValidationError
from models import Member, MemberStatus, MembershipRole, MembershipType, Subscription, SubscriptionStatus
from schemas import ImportReport

log = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["email", "first_name", "last_name", "membership_number", "membership_type", "membership_year"]
MEMBERSHIP_TYPES = [t.value for t in MembershipType]


def normalize_column(name: str) -> str:
    name = str(name).strip().lower().replace(" ", "_").replace("-", "_")
    return re.sub(r"[^a-z0-9_]", "", name)


def read_members_csv(content: Union[str, bytes]) -> pd.DataFrame:
    """Parse the upload into a frame of stripped strings with normalized headers."""
    if isinstance(content, bytes):
        content = content.decode("utf-8-sig")
    if not content.strip():
        raise ValidationError(["CSV header row is missing."])
    try:
        frame = pd.read_csv(io.StringIO(content), dtype=str, keep_default_na=False, skip_blank_lines=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ValidationError([f"Could not read CSV: {e}"]) from e

    frame.columns = [normalize_column(c) for c in frame.columns]
    missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
    if missing:
        raise ValidationError([f"Missing required columns: {', '.join(missing)}"])
    return frame.apply(lambda column: column.str.strip())


def validate_row(row: Dict[str, str]) -> List[str]:
    errors = []
    try:
        validate_email(row.get("email", ""), check_deliverability=False)
    except EmailNotValidError:
        errors.append("Invalid email")
    if not row.get("first_name"):
        errors.append("First name is required")
    if not row.get("last_name"):
        errors.append("Last name is required")
    if not row.get("membership_number"):
        errors.append("Membership number is required")
    if row.get("membership_type", "").lower() not in MEMBERSHIP_TYPES:
        errors.append(f"Membership type must be one of: {', '.join(MEMBERSHIP_TYPES)}")
    year = row.get("membership_year", "")
    if not year.isdigit() or not 2000 <= int(year) <= 2100:
        errors.append("Membership year is invalid")
    return errors


class MemberImportService:

    @staticmethod
    async def import_members_csv(
        db: AsyncSession,
        content: Union[str, bytes],
        actor_id: Optional[int],
        policy: MembershipPolicy,
    ) -> ImportReport:
        frame = read_members_csv(content)
        report = ImportReport()

        # Header is line 1
        for line_number, row in enumerate(frame.to_dict(orient="records"), start=2):
            if not any(row.values()):
                continue
            report.processed += 1

            errors = validate_row(row)
            if errors:
                report.errors.append(f"Line {line_number}: {'; '.join(errors)}")
                await ActivityLogger.log_system_event(db, "member_import_row_error", {
                    "line": line_number,
                    "error_count": len(errors),
                }, actor_id, commit=True)
                continue

            try:
                outcome = await MemberImportService._import_row(db, row, actor_id, policy)
            except IntegrityError:
                await db.rollback()
                report.errors.append(f"Line {line_number}: record conflicts with an existing member")
                await ActivityLogger.log_system_event(db, "member_import_row_exception", {
                    "line": line_number,
                }, actor_id, commit=True)
                continue

            if outcome["duplicate"]:
                report.duplicates.append(f"Line {line_number}: {outcome['message']}")
                await ActivityLogger.log_system_event(db, "member_import_row_duplicate", {
                    "line": line_number,
                    "duplicate_code": outcome["code"],
                }, actor_id, commit=True)
                continue

            report.created += 1
            report.created_users += 1 if outcome["user_created"] else 0

        await ActivityLogger.log_system_event(db, "members_imported", {
            "processed": report.processed,
            "created": report.created,
            "created_users": report.created_users,
            "duplicates": len(report.duplicates),
            "errors": len(report.errors),
        }, actor_id, commit=True)
        log.info(
            f"Member import by user {actor_id}: {report.created} created, "
            f"{len(report.duplicates)} duplicates, {len(report.errors)} errors"
        )
        return report

    @staticmethod
    async def _import_row(
        db: AsyncSession,
        row: Dict[str, str],
        actor_id: Optional[int],
        policy: MembershipPolicy,
    ) -> dict:
        email = row["email"].lower()
        membership_number = row["membership_number"]
        membership_type = row["membership_type"].lower()
        membership_year = int(row["membership_year"])

        if await crud.get_member_by_number(db, membership_number) is not None:
            return {"duplicate": True, "code": "membership_number_exists",
                    "message": f"Membership number already exists ({membership_number})"}

        existing_user = await crud.get_user_by_email(db, email)
        user = existing_user or await crud.get_or_create_user(db, email, row["first_name"], row["last_name"])
        if await crud.get_member_by_user(db, user.id) is not None:
            return {"duplicate": True, "code": "user_already_member",
                    "message": f"Member already exists for email {email}"}

        now = datetime.now(timezone.utc)
        member = Member(
            user_id=user.id,
            membership_number=membership_number,
            membership_type=membership_type,
            status=MemberStatus.ACTIVE.value,
            approved_at=now,
            activated_at=now,
        )
        db.add(member)
        await db.flush()

        amount = policy.price_for(membership_type)
        cycle_start = date(membership_year - 1, 7, 1)
        db.add(Subscription(
            member_id=member.id,
            membership_year=membership_year,
            start_date=cycle_start,
            end_date=date(membership_year, 6, 30),
            amount_due=amount,
            amount_paid=amount,
            status=SubscriptionStatus.ACTIVE.value,
            due_date=cycle_start,
            paid_at=now,
        ))
        await BoardDecisionService.assign_role(db, user, MembershipRole.MEMBER, actor_id, member_id=member.id)
        await ActivityLogger.log_member_event(db, member.id, "member_imported_csv", {
            "membership_year": membership_year,
            "user_created": existing_user is None,
        }, actor_id)
        await db.commit()
        return {"duplicate": False, "user_created": existing_user is None}
