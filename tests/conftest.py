import os
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from warden.config import Settings  # noqa: E402
from warden.service.clock import ManualClock  # noqa: E402
from warden.service.runtime import Runtime  # noqa: E402
from warden.service.seed import seed_defaults  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "CorrectHorse9"
ADMIN_EMAIL = "root@example.com"


class RecordingEmailSender:
    """EmailSender that keeps every message instead of delivering it."""

    def __init__(self) -> None:
        self.sent: List[dict] = []

    def send(self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None) -> bool:
        self.sent.append(
            {"to": to_email, "subject": subject, "html": html_body, "text": text_body or ""}
        )
        return True

    def to(self, address: str) -> List[dict]:
        return [message for message in self.sent if message["to"] == address]

    @property
    def last(self) -> dict:
        return self.sent[-1]


class RecordingSmsSender:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []

    def send(self, to_number: str, body: str) -> bool:
        self.sent.append((to_number, body))
        return True


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        super_admin_email=ADMIN_EMAIL,
        frontend_url="https://app.example.com",
    )


@pytest.fixture
def store():
    memory = MemoryStore()
    seed_defaults(memory)
    return memory


@pytest.fixture
def outbox():
    return RecordingEmailSender()


@pytest.fixture
def sms_outbox():
    return RecordingSmsSender()


@pytest.fixture
def runtime(settings, store, clock, outbox, sms_outbox):
    return Runtime(settings, store=store, clock=clock, email_sender=outbox, sms_sender=sms_outbox)


@pytest.fixture
def tokens(runtime):
    return runtime.tokens


@pytest.fixture
def sessions(runtime):
    return runtime.sessions


@pytest.fixture
def rbac(runtime):
    return runtime.rbac


@pytest.fixture
def policy(runtime):
    return runtime.policy


@pytest.fixture
def mfa(runtime):
    return runtime.mfa


@pytest.fixture
def invitations(runtime):
    return runtime.invitations


@pytest.fixture
def audit(runtime):
    return runtime.audit


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def identity(auth):
    """A signed-up local identity holding the default employee role."""
    return auth.signup("alice@example.com", TEST_PASSWORD, display_name="Alice")


@pytest.fixture
def admin(auth):
    """The configured super-admin."""
    return auth.signup(ADMIN_EMAIL, TEST_PASSWORD, display_name="Root")


@pytest.fixture
def organization(policy, store):
    """An organization owned by a fresh identity, with core modules enabled."""
    owner = store.create_identity("owner@acme.test", None, email_verified=True)
    org = policy.create_organization("Acme", owner.id)
    return org, owner
