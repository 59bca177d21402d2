from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.domain.models import BillingProviderRecord, Organization, OrganizationEntitlement


async def get_organization(
    session: AsyncSession, org_id: str, *, for_update: bool = False
) -> Organization | None:
    # Row lock serializes every entitlement mutation for one organization.
    stmt = select(Organization).where(Organization.id == org_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_entitlement(
    session: AsyncSession, org_id: str, *, for_update: bool = False
) -> OrganizationEntitlement | None:
    stmt = select(OrganizationEntitlement).where(OrganizationEntitlement.org_id == org_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_provider_records(session: AsyncSession, org_id: str) -> list[BillingProviderRecord]:
    result = await session.execute(
        select(BillingProviderRecord)
        .where(BillingProviderRecord.org_id == org_id)
        .order_by(BillingProviderRecord.updated_at.desc(), BillingProviderRecord.provider)
    )
    return list(result.scalars().all())


async def existing_ids(session: AsyncSession, candidates: list[str]) -> set[str]:
    if not candidates:
        return set()
    result = await session.execute(select(Organization.id).where(Organization.id.in_(candidates)))
    return set(result.scalars().all())


async def name_taken(session: AsyncSession, name: str) -> bool:
    result = await session.execute(
        select(func.count()).select_from(Organization).where(Organization.name_lower == name.strip().lower())
    )
    return int(result.scalar_one()) > 0


async def list_organizations_page(
    session: AsyncSession,
    *,
    after_id: str | None,
    limit: int,
    org_type: str | None = None,
) -> list[Organization]:
    # Stable id-ordered pages so sweeps can resume without skipping tenants.
    stmt = select(Organization).order_by(Organization.id).limit(limit)
    if after_id is not None:
        stmt = stmt.where(Organization.id > after_id)
    if org_type is not None:
        stmt = stmt.where(Organization.type == org_type)
    result = await session.execute(stmt)
    return list(result.scalars().all())
