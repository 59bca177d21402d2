from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from maintdesk.domain.models import PreventiveTemplate


async def get_template_for_org(
    session: AsyncSession, org_id: str, template_id: str, *, for_update: bool = False
) -> PreventiveTemplate | None:
    # Organization scoping keeps one tenant from reading another tenant's templates.
    stmt = select(PreventiveTemplate).where(
        PreventiveTemplate.id == template_id,
        PreventiveTemplate.org_id == org_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_template(
    session: AsyncSession, template_id: str, *, for_update: bool = False
) -> PreventiveTemplate | None:
    stmt = select(PreventiveTemplate).where(PreventiveTemplate.id == template_id)
    if for_update:
        # Refresh a row already loaded unlocked earlier in the same transaction.
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_templates_by_org(session: AsyncSession, org_id: str) -> list[PreventiveTemplate]:
    result = await session.execute(
        select(PreventiveTemplate)
        .where(PreventiveTemplate.org_id == org_id)
        .order_by(PreventiveTemplate.created_at, PreventiveTemplate.id)
    )
    return list(result.scalars().all())


async def list_automatic_template_ids(
    session: AsyncSession, *, after_id: str | None, limit: int
) -> list[str]:
    # Id-ordered keyset pages; each page is read fresh so concurrent edits are picked up.
    stmt = (
        select(PreventiveTemplate.id)
        .where(
            PreventiveTemplate.status == "active",
            PreventiveTemplate.automatic.is_(True),
        )
        .order_by(PreventiveTemplate.id)
        .limit(limit)
    )
    if after_id is not None:
        stmt = stmt.where(PreventiveTemplate.id > after_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())
