"""
Tests for principal lookups and profile changes.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.errors import Conflict, Forbidden, NotFound
from app.features.permissions.audit import SYSTEM, AuditContext
from app.features.permissions.lifecycle import assign_role
from app.features.permissions.models import AuditEntry
from app.features.principals import service
from app.features.principals.models import PrincipalStatus
from app.utils import utcnow
from tests.conftest import get_role_by_name


class TestGetOrCreatePrincipal:
    async def test_first_login_creates(self, db_session):
        principal, created = await service.get_or_create_principal(
            db_session, "appwrite-1", "new@example.com", "New Person"
        )

        assert created is True
        assert principal.status == PrincipalStatus.ACTIVE
        assert principal.last_active_at is not None
        entry = (await db_session.execute(select(AuditEntry))).scalars().one()
        assert entry.action == "principal_created"
        assert entry.actor_id == principal.id

    async def test_second_login_reuses(self, db_session):
        first, _ = await service.get_or_create_principal(db_session, "appwrite-1", "new@example.com")
        again, created = await service.get_or_create_principal(db_session, "appwrite-1", "new@example.com")

        assert created is False
        assert again.id == first.id

    async def test_email_taken_by_other_identity(self, db_session, make_principal):
        await make_principal("taken")

        with pytest.raises(Conflict):
            await service.get_or_create_principal(db_session, "appwrite-other", "taken@example.com")


class TestUpdateProfile:
    async def test_updates_and_audits(self, db_session, make_principal):
        principal = await make_principal("henry")
        ctx = AuditContext(actor_id=principal.id)

        await service.update_profile(db_session, principal, ctx, display_name="Hank", employee_ref="EMP-9")

        assert principal.display_name == "Hank"
        assert principal.employee_ref == "EMP-9"
        entry = (await db_session.execute(select(AuditEntry))).scalars().one()
        assert entry.changes["new"] == {"display_name": "Hank", "employee_ref": "EMP-9"}

    async def test_unchanged_profile_writes_nothing(self, db_session, make_principal):
        principal = await make_principal("henry")

        await service.update_profile(db_session, principal, SYSTEM, display_name="Henry")

        assert (await db_session.execute(select(AuditEntry))).first() is None

    async def test_clear_employee_ref(self, db_session, make_principal):
        principal = await make_principal("henry", employee_ref="EMP-1")

        await service.update_profile(db_session, principal, SYSTEM, clear_employee_ref=True)

        assert principal.employee_ref is None

    async def test_employee_ref_must_be_unique(self, db_session, make_principal):
        await make_principal("ivy", employee_ref="EMP-1")
        jack = await make_principal("jack")

        with pytest.raises(Conflict):
            await service.update_profile(db_session, jack, SYSTEM, employee_ref="EMP-1")


class TestSetPrincipalStatus:
    async def test_deactivate_other(self, db_session, make_principal):
        actor = await make_principal("actor")
        target = await make_principal("target")

        updated = await service.set_principal_status(
            db_session, target.id, PrincipalStatus.SUSPENDED, AuditContext(actor_id=actor.id)
        )

        assert updated.status == PrincipalStatus.SUSPENDED
        entry = (await db_session.execute(select(AuditEntry))).scalars().one()
        assert entry.changes == {"old": {"status": "active"}, "new": {"status": "suspended"}}

    async def test_cannot_deactivate_self(self, db_session, make_principal):
        actor = await make_principal("actor")

        with pytest.raises(Forbidden):
            await service.set_principal_status(
                db_session, actor.id, PrincipalStatus.INACTIVE, AuditContext(actor_id=actor.id)
            )

    async def test_unknown_principal(self, db_session):
        with pytest.raises(NotFound):
            await service.set_principal_status(db_session, "missing", PrincipalStatus.INACTIVE, SYSTEM)


class TestListPrincipals:
    async def test_filters_by_status_and_live_role(self, seeded, make_principal):
        viewer = await get_role_by_name(seeded, "viewer")
        live = await make_principal("live")
        lapsed = await make_principal("lapsed")
        await make_principal("gone", status=PrincipalStatus.INACTIVE)
        await assign_role(seeded, live.id, viewer.id, SYSTEM)
        await assign_role(seeded, lapsed.id, viewer.id, SYSTEM, expires_at=utcnow() - timedelta(days=1))

        everyone, total = await service.list_principals(seeded)
        assert total == 3
        assert [p.email for p in everyone] == ["live@example.com", "lapsed@example.com", "gone@example.com"]

        active, total = await service.list_principals(seeded, status=PrincipalStatus.ACTIVE)
        assert total == 2

        holders, total = await service.list_principals(seeded, role_id=viewer.id)
        assert [p.id for p in holders] == [live.id]
        assert total == 1
