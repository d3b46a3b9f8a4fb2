import importlib.util
from pathlib import Path

import pytest

from warden.config import Settings
from warden.service import runtime as runtime_module
from warden.service.policy import EMPLOYEE_ROLE, OWNER_ROLE, SUPER_ADMIN_ROLE
from warden.service.runtime import Runtime, _mask_url_password
from warden.service.seed import DEFAULT_MODULES, DEFAULT_PERMISSIONS, OWNER_PERMISSIONS, seed_defaults
from warden.storage.memory import MemoryStore

ROOT = Path(__file__).resolve().parent.parent


def _settings(tmp_path, **overrides):
    values = dict(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
    )
    values.update(overrides)
    return Settings(**values)


class TestSeed:
    def test_second_run_creates_nothing(self, store):
        assert seed_defaults(store) == {"roles": [], "permissions": [], "modules": []}

    def test_first_run_reports_catalog(self):
        created = seed_defaults(MemoryStore())

        assert set(created["roles"]) == {SUPER_ADMIN_ROLE, OWNER_ROLE, EMPLOYEE_ROLE}
        assert len(created["permissions"]) == sum(len(actions) for actions in DEFAULT_PERMISSIONS.values())
        assert created["modules"] == list(DEFAULT_MODULES)

    def test_role_permissions(self, store):
        owner = store.get_role_by_name(OWNER_ROLE)
        admin = store.get_role_by_name(SUPER_ADMIN_ROLE)
        employee = store.get_role_by_name(EMPLOYEE_ROLE)

        assert {p.name for p in store.list_role_permissions(owner.id)} == set(OWNER_PERMISSIONS)
        assert len(store.list_role_permissions(admin.id)) == len(store.list_permissions())
        assert store.list_role_permissions(employee.id) == []
        assert not admin.is_assignable


class TestRuntime:
    def test_ledger_defaults_to_the_store(self, tmp_path):
        runtime = Runtime(_settings(tmp_path))

        assert isinstance(runtime.store, MemoryStore)
        assert runtime.ledger is runtime.store

    def test_unreachable_redis_falls_back_in_test_mode(self, tmp_path):
        runtime = Runtime(_settings(tmp_path, redis_url="redis://127.0.0.1:1/0"))

        assert runtime.ledger is runtime.store

    def test_unreachable_redis_is_fatal_outside_test_mode(self, tmp_path):
        with pytest.raises(RuntimeError, match="REDIS_URL"):
            Runtime(_settings(tmp_path, redis_url="redis://127.0.0.1:1/0", test_mode=False))

    def test_cleanup_expired(self, runtime, auth, identity, clock):
        auth.login(identity.email, "CorrectHorse9").unwrap()
        clock.advance(days=8)

        summary = runtime.cleanup_expired()

        assert set(summary) == {"tokens", "sessions", "invitations", "password_resets", "login_attempts"}
        assert summary["tokens"] == {"refresh": 1, "remember_me": 0}
        assert summary["sessions"] == 1

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:secret@localhost:6379/0") == "redis://:***@localhost:6379/0"
        assert _mask_url_password("redis://localhost:6379") == "redis://localhost:6379"
        assert _mask_url_password(None) is None


@pytest.fixture
def bootstrap(runtime, monkeypatch):
    monkeypatch.setattr(runtime_module, "runtime", runtime)
    spec = importlib.util.spec_from_file_location("bootstrap_admin", ROOT / "scripts" / "bootstrap_admin.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


class TestBootstrapAdmin:
    def test_creates_then_recognizes_admin(self, bootstrap, rbac, audit):
        created = bootstrap("Ops@Example.com", "CorrectHorse9")
        again = bootstrap("ops@example.com", "CorrectHorse9")

        assert created["status"] == "created"
        assert created["email"] == "ops@example.com"
        assert rbac.has_role(created["identity_id"], SUPER_ADMIN_ROLE)
        assert again["status"] == "already_admin"

    def test_promotes_existing_identity(self, bootstrap, identity, rbac):
        result = bootstrap(identity.email, "ignored")

        assert result["status"] == "promoted"
        assert rbac.has_role(identity.id, SUPER_ADMIN_ROLE)

    def test_dry_run_changes_nothing(self, bootstrap, store):
        result = bootstrap("new@example.com", "CorrectHorse9", dry_run=True)

        assert result == {"identity_id": None, "email": "new@example.com", "status": "dry_run"}
        assert store.get_identity_by_email("new@example.com") is None
