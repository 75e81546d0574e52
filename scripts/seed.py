#!/usr/bin/env python3
"""
Seed script: creates a demo owner, organization, project with its platform
subdomain, and an API token. Run after migrations: python scripts/seed.py
"""

import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from dabao_access.config import settings
from dabao_access.database import build_engine, build_session_factory
from dabao_access.engine.permissions import Role
from dabao_access.models import Organization, Project
from dabao_access.services import build_services
from dabao_access.storage import repositories

OWNER_EXTERNAL_ID = "00000000-0000-0000-0000-000000000001"  # Supabase user id of the demo owner
OWNER_EMAIL = "owner@acme.example.com"


async def seed():
    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    services = build_services(settings, session_factory)

    async with session_factory() as session:
        owner = await repositories.ensure_user(session, OWNER_EXTERNAL_ID, OWNER_EMAIL)

        result = await session.execute(select(Organization).where(Organization.slug == "acme"))
        org = result.scalar_one_or_none()
        if org:
            print("Organization already exists, using existing.")
        else:
            org = await repositories.create_organization(session, "Acme Inc", "acme", owner.id)
            await session.commit()

        result = await session.execute(select(Project).where(Project.slug == "acme"))
        project = result.scalar_one_or_none()
        if project:
            print("Project already exists, using existing.")
        else:
            project = await repositories.create_project(
                session, org.id, "Acme Rewards", "acme", theme={"primaryColor": "#ff5a1f"}
            )
            await services.directory.provision_platform_domain(session, project)
            await session.commit()

    domain = await services.directory.primary_domain(project.id)

    await services.policy_store.assign_role(owner.id, project.id, Role.OWNER)
    issued = await services.tokens.create_token(project.id, Role.VIEWER, user_id=owner.id)

    await engine.dispose()

    print("Seed complete.")
    print(f"  Organization: {org.id}")
    print(f"  Project:      {project.id}")
    print(f"  Domain:       {domain} (send it as the Host header)")
    print(f"  Owner user:   {owner.id} (external id {OWNER_EXTERNAL_ID})")
    print(f"  Viewer token: {issued.token}")


if __name__ == "__main__":
    asyncio.run(seed())
