from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
import secrets
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.core.errors import MembershipRequired, ValidationFailure
from platformcore.domain.models import Organization, OrganizationMember, Role as RoleRecord, User
from platformcore.services.auth.roles import Role, parse_role


logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 50
_SLUG_SEQUENTIAL_ATTEMPTS = 1000
_ROLE_DESCRIPTIONS: dict[Role, str] = {
    Role.OWNER: "Organization owner with full access",
    Role.ADMIN: "Administrator with access to settings, roles and integrations",
    Role.MANAGER: "Manages day-to-day operations, workflows and transactions",
    Role.EDITOR: "Creates and edits content, contacts and products",
    Role.MEMBER: "Regular team member",
    Role.VIEWER: "Read-only access",
}


@dataclass(frozen=True)
class MembershipView:
    organization: Organization
    role: Role


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def slugify(name: str) -> str:
    slug = (name or "").lower().replace("'", "")
    slug = re.sub(r"[^a-z0-9]+", "-", slug).strip("-")
    slug = slug[:SLUG_MAX_LENGTH].strip("-")
    return slug or "organization"


def default_organization_name(first_name: str | None, last_name: str | None) -> str:
    full_name = (first_name or "").strip()
    if last_name and last_name.strip():
        full_name = f"{full_name} {last_name.strip()}".strip()
    return f"{full_name or 'My'}'s Organization"


async def _slug_taken(session: AsyncSession, slug: str) -> bool:
    existing = await session.execute(select(Organization.id).where(Organization.slug == slug))
    return existing.first() is not None


async def generate_unique_slug(session: AsyncSession, name: str) -> str:
    # Sequential suffixes first, then a random suffix once the sequence is exhausted.
    base = slugify(name)
    if not await _slug_taken(session, base):
        return base
    for counter in range(2, _SLUG_SEQUENTIAL_ATTEMPTS + 2):
        candidate = f"{base}-{counter}"
        if not await _slug_taken(session, candidate):
            return candidate
    return f"{base}-{secrets.randbelow(100000)}"


async def get_or_create_role(session: AsyncSession, role: Role) -> RoleRecord:
    row = (
        await session.execute(select(RoleRecord).where(RoleRecord.name == role.value))
    ).scalar_one_or_none()
    if row is not None:
        return row
    row = RoleRecord(
        id=uuid4().hex,
        name=role.value,
        description=_ROLE_DESCRIPTIONS[role],
        is_active=True,
    )
    session.add(row)
    await session.flush()
    logger.info("role_created name=%s", role.value)
    return row


async def find_or_create_user(
    session: AsyncSession,
    *,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
) -> tuple[User, bool]:
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationFailure("Email is required", field_errors={"email": "required"})
    user = (await session.execute(select(User).where(User.email == normalized))).scalar_one_or_none()
    if user is not None:
        return user, False
    user = User(
        id=uuid4().hex,
        email=normalized,
        first_name=first_name or None,
        last_name=last_name or None,
        is_active=True,
    )
    session.add(user)
    await session.flush()
    logger.info("user_created user_id=%s", user.id)
    return user, True


async def add_member(
    session: AsyncSession,
    *,
    user_id: str,
    organization_id: str,
    role: Role,
    invited_by: str | None,
) -> OrganizationMember:
    role_row = await get_or_create_role(session, role)
    member = OrganizationMember(
        id=uuid4().hex,
        user_id=user_id,
        organization_id=organization_id,
        role_id=role_row.id,
        is_active=True,
        invited_by=invited_by,
        joined_at=_utc_now(),
    )
    session.add(member)
    await session.flush()
    return member


async def create_organization(
    session: AsyncSession,
    *,
    name: str,
    owner: User,
    personal_workspace: bool = False,
) -> Organization:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationFailure("Organization name is required", field_errors={"name": "required"})
    organization = Organization(
        id=uuid4().hex,
        name=cleaned,
        slug=await generate_unique_slug(session, cleaned),
        email=owner.email,
        is_personal_workspace=personal_workspace,
        is_active=True,
        created_by=owner.id,
    )
    session.add(organization)
    await session.flush()
    await add_member(
        session,
        user_id=owner.id,
        organization_id=organization.id,
        role=Role.OWNER,
        invited_by=owner.id,
    )
    logger.info("organization_created organization_id=%s slug=%s", organization.id, organization.slug)
    return organization


async def ensure_default_organization(
    session: AsyncSession,
    user: User,
    *,
    organization_name: str | None = None,
) -> Organization:
    # Read-then-set on default_org_id; concurrent first logins can race (documented gap).
    if user.default_org_id:
        existing = await session.get(Organization, user.default_org_id)
        if existing is not None:
            return existing
    organization = await create_organization(
        session,
        name=organization_name or default_organization_name(user.first_name, user.last_name),
        owner=user,
        personal_workspace=True,
    )
    user.default_org_id = organization.id
    user.updated_at = _utc_now()
    await session.flush()
    return organization


async def get_membership_role(
    session: AsyncSession, *, user_id: str, organization_id: str
) -> Role | None:
    row = (
        await session.execute(
            select(RoleRecord.name)
            .join(OrganizationMember, OrganizationMember.role_id == RoleRecord.id)
            .where(
                OrganizationMember.user_id == user_id,
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.is_active.is_(True),
            )
        )
    ).first()
    if row is None:
        return None
    return parse_role(row[0])


async def require_membership(session: AsyncSession, *, user_id: str, organization_id: str) -> Role:
    role = await get_membership_role(session, user_id=user_id, organization_id=organization_id)
    if role is None:
        raise MembershipRequired("You do not have access to this organization")
    return role


async def list_user_organizations(session: AsyncSession, user_id: str) -> list[MembershipView]:
    rows = (
        await session.execute(
            select(Organization, RoleRecord.name)
            .join(OrganizationMember, OrganizationMember.organization_id == Organization.id)
            .join(RoleRecord, RoleRecord.id == OrganizationMember.role_id)
            .where(
                OrganizationMember.user_id == user_id,
                OrganizationMember.is_active.is_(True),
                Organization.is_active.is_(True),
            )
            .order_by(Organization.created_at)
        )
    ).all()
    return [MembershipView(organization=org, role=parse_role(role_name)) for org, role_name in rows]


async def sync_external_user(
    session: AsyncSession,
    *,
    organization_id: str,
    email: str,
    first_name: str | None,
    last_name: str | None,
    invited_by: str,
) -> tuple[User, bool]:
    """Find or create a user and add them to the organization as a viewer.

    Returns the user and whether a membership was added. Existing members keep
    their current role.
    """
    user, _created = await find_or_create_user(
        session, email=email, first_name=first_name, last_name=last_name
    )
    role = await get_membership_role(session, user_id=user.id, organization_id=organization_id)
    if role is not None:
        return user, False
    await add_member(
        session,
        user_id=user.id,
        organization_id=organization_id,
        role=Role.VIEWER,
        invited_by=invited_by,
    )
    return user, True
