import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from bastion.storage.errors import ConstraintViolation
from bastion.storage.memory import MemoryStore
from bastion.storage.models import Permission, Role, Session

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
KEY = "unit-test-mfa-key"


def state_file(root) -> Path:
    return Path(root) / "state" / "bastion_store.json"


def test_memory_store_persists_principals_sessions_and_assignments(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    principal = store.create_principal("persist@example.com", "hash", role="editor")
    session = store.create_session(Session.new(principal.id, 60, ip_address="10.0.0.1", now=NOW))
    role = store.create_role("developer", 3)
    store.create_assignment(
        principal.id, role.id, project_id="proj-1", assigned_by=None, expires_at=None, now=NOW
    )
    store.set_legacy_role_map({"editor": "developer"})

    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)

    assert reloaded.get_principal(principal.id).role == "editor"
    restored = reloaded.get_session(session.token)
    assert restored.expires_at == NOW + timedelta(minutes=60)
    assert restored.ip_address == "10.0.0.1"
    assert [a.project_id for a in reloaded.list_assignments(principal.id, now=NOW)] == ["proj-1"]
    assert reloaded.get_legacy_role_map() == {"editor": "developer"}


def test_mfa_secrets_are_encrypted_on_disk(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    principal = store.create_principal("mfa@example.com")
    store.update_principal(principal.id, mfa_enabled=True, mfa_secret="JBSWY3DPEHPK3PXP")
    store.save_mfa_enrollment(principal.id, "GEZDGNBVGY3TQOJQ", now=NOW)

    raw = state_file(tmp_path).read_text()

    assert "JBSWY3DPEHPK3PXP" not in raw
    assert "GEZDGNBVGY3TQOJQ" not in raw
    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    assert reloaded.get_principal(principal.id).mfa_secret == "JBSWY3DPEHPK3PXP"
    assert reloaded.get_mfa_enrollment(principal.id).secret == "GEZDGNBVGY3TQOJQ"


def test_wrong_key_cannot_read_mfa_secret(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    principal = store.create_principal("mfa@example.com")
    store.update_principal(principal.id, mfa_enabled=True, mfa_secret="JBSWY3DPEHPK3PXP")
    store.save_mfa_enrollment(principal.id, "GEZDGNBVGY3TQOJQ", now=NOW)

    other = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="another-key")

    assert other.get_principal(principal.id).mfa_secret is None
    assert other.get_mfa_enrollment(principal.id) is None


def test_without_fs_root_nothing_is_written(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    store = MemoryStore(mfa_encryption_key=KEY)
    store.create_principal("ephemeral@example.com")

    assert not any(tmp_path.iterdir())


class TestPrincipals:
    def test_email_is_normalized_and_unique(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        store.create_principal("  Taken@Example.com ")

        with pytest.raises(ConstraintViolation) as exc:
            store.create_principal("taken@example.com")

        assert exc.value.detail == {"field": "email"}
        assert store.get_principal_by_email("TAKEN@example.com").email == "taken@example.com"

    def test_returned_records_are_copies(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        principal = store.create_principal("copy@example.com")

        principal.role = "super_admin"

        assert store.get_principal(principal.id).role == "guest"

    def test_update_rejects_unknown_fields(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        principal = store.create_principal("patch@example.com")

        with pytest.raises(ValueError):
            store.update_principal(principal.id, email="other@example.com")

    def test_update_unknown_principal(self):
        assert MemoryStore(mfa_encryption_key=KEY).update_principal("ghost", role="x") is None


class TestSessions:
    def test_session_requires_principal(self):
        store = MemoryStore(mfa_encryption_key=KEY)

        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new("ghost", now=NOW))

    def test_revoke_all_except_current(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        principal = store.create_principal("many@example.com")
        keep = store.create_session(Session.new(principal.id, now=NOW))
        store.create_session(Session.new(principal.id, now=NOW))
        store.create_session(Session.new(principal.id, now=NOW))

        assert store.revoke_principal_sessions(principal.id, except_token=keep.token) == 2
        assert [s.token for s in store.list_sessions(principal.id)] == [keep.token]
        assert store.revoke_session(keep.token) is True
        assert store.revoke_session(keep.token) is False

    def test_purge_drops_expired_and_revoked(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        principal = store.create_principal("purge@example.com")
        short = store.create_session(Session.new(principal.id, 5, now=NOW))
        revoked = store.create_session(Session.new(principal.id, 60, now=NOW))
        live = store.create_session(Session.new(principal.id, 60, now=NOW))
        store.revoke_session(revoked.token)

        purged = store.purge_expired_sessions(NOW + timedelta(minutes=10))

        assert purged == 2
        assert store.get_session(short.token) is None
        assert store.get_session(live.token) is not None


class TestRoleCatalog:
    def test_assignment_uniqueness_is_per_scope(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        principal = store.create_principal("dev@example.com")
        role = store.create_role("developer", 3)
        kwargs = {"assigned_by": None, "expires_at": None, "now": NOW}
        store.create_assignment(principal.id, role.id, project_id=None, **kwargs)
        store.create_assignment(principal.id, role.id, project_id="proj-1", **kwargs)

        with pytest.raises(ConstraintViolation):
            store.create_assignment(principal.id, role.id, project_id="proj-1", **kwargs)

    def test_expired_assignment_does_not_block_reassignment(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        principal = store.create_principal("temp@example.com")
        role = store.create_role("client", 2)
        store.create_assignment(
            principal.id,
            role.id,
            project_id=None,
            assigned_by=None,
            expires_at=NOW + timedelta(hours=1),
            now=NOW,
        )
        later = NOW + timedelta(hours=2)

        store.create_assignment(
            principal.id, role.id, project_id=None, assigned_by=None, expires_at=None, now=later
        )

        assert store.purge_expired_assignments(later) == 1
        assert len(store.list_assignments(principal.id, now=later)) == 1

    def test_replace_catalog_drops_orphaned_assignments(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        principal = store.create_principal("orphan@example.com")
        old = store.create_role("legacy_role", 1)
        store.create_assignment(
            principal.id, old.id, project_id=None, assigned_by=None, expires_at=None, now=NOW
        )
        view = Permission(id="p1", name="view_project", category="project")

        store.replace_role_catalog(
            [Role(id="r1", name="guest", level=1)],
            [view],
            {"r1": ["p1", "missing"], "gone": ["p1"]},
            {},
        )

        assert store.list_assignments(principal.id, now=NOW) == []
        assert [p.name for p in store.get_role_permissions("r1")] == ["view_project"]
        assert store.get_role("gone") is None

    def test_grant_requires_known_role_and_permission(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        role = store.create_role("guest", 1)

        with pytest.raises(ConstraintViolation):
            store.grant_permission(role.id, "nope")
        with pytest.raises(ConstraintViolation):
            store.grant_permission("nope", "nope")

    def test_revoke_permission(self):
        store = MemoryStore(mfa_encryption_key=KEY)
        role = store.create_role("guest", 1)
        permission = store.create_permission("view_project", "project")
        store.grant_permission(role.id, permission.id)

        assert store.revoke_permission(role.id, permission.id) is True
        assert store.revoke_permission(role.id, permission.id) is False
        assert store.get_role_permissions(role.id) == []

    def test_catalog_is_persisted(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
        role = store.create_role("guest", 1, "read only")
        permission = store.create_permission("view_project", "project")
        store.grant_permission(role.id, permission.id)

        data = json.loads(state_file(tmp_path).read_text())
        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)

        assert data["role_permissions"] == {role.id: [permission.id]}
        assert reloaded.get_role_by_name("guest").description == "read only"
        assert [p.name for p in reloaded.get_role_permissions(role.id)] == ["view_project"]
