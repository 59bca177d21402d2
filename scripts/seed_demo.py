from __future__ import annotations

import asyncio
import sys

from maintdesk.core.logging import configure_logging
from maintdesk.persistence.db import SessionLocal
from maintdesk.persistence.repos import organizations as org_repo
from maintdesk.services.organizations import create_organization, sanitize_organization_id
from maintdesk.services.resources import create_department, create_site
from maintdesk.services.scheduling.calculator import SCHEDULE_WEEKLY, ScheduleSpec
from maintdesk.services.templates import TemplateDraft, create_template


DEMO_ORG_NAME = "Demo Plant"
DEMO_USER_ID = "demo-admin"


async def seed_demo() -> int:
    # Idempotent: an existing demo organization is left untouched.
    org_id = sanitize_organization_id(DEMO_ORG_NAME)
    async with SessionLocal() as session:
        if await org_repo.get_organization(session, org_id) is not None:
            print(f"Demo organization {org_id} already seeded; skipping.")
            return 0
        await session.rollback()

        await create_organization(session, name=DEMO_ORG_NAME, created_by=DEMO_USER_ID, demo=True)
        site = await create_site(session, org_id=org_id, name="Main Plant", actor_id=DEMO_USER_ID)
        department = await create_department(session, org_id=org_id, name="Facilities", actor_id=DEMO_USER_ID)
        template = await create_template(
            session,
            org_id=org_id,
            draft=TemplateDraft(
                name="Weekly boiler inspection",
                description="Check pressure, flue and safety valves.",
                automatic=True,
                priority="high",
                site_id=site.id,
                department_id=department.id,
                checklist=["Read pressure gauge", "Inspect flue", "Test safety valve"],
                schedule=ScheduleSpec(
                    type=SCHEDULE_WEEKLY,
                    timezone="Europe/Madrid",
                    time_of_day="07:30",
                    days_of_week=(1, 4),
                ),
            ),
            actor_id=DEMO_USER_ID,
        )
    print(f"Seeded demo organization {org_id} with template {template.id} (next run {template.next_run_at}).")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
