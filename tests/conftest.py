import os
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tokengate_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokengate.service.credentials import CredentialStore  # noqa: E402
from tokengate.service.devices import ClientFingerprint  # noqa: E402
from tokengate.service.gate import AuthenticationGate  # noqa: E402
from tokengate.service.login_tokens import LoginTokenAuthority  # noqa: E402
from tokengate.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokengate.service.sessions import SessionAuthority  # noqa: E402
from tokengate.service.tokens import TokenCodec  # noqa: E402
from tokengate.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-secret-0123456789abcdef0123456789"
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Manually advanced clock shared by the services under test."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@dataclass
class RecordingMailer:
    """Collects login confirmation links instead of sending mail."""

    sent: List[dict] = field(default_factory=list)
    succeed: bool = True

    def send_login_confirmation(self, to_email, token, *, device, ip_address, ttl_minutes):
        self.sent.append(
            {
                "to": to_email,
                "token": token,
                "device": device,
                "ip_address": ip_address,
                "ttl_minutes": ttl_minutes,
            }
        )
        return self.succeed

    def last_token_for(self, email: str) -> str:
        return next(m["token"] for m in reversed(self.sent) if m["to"] == email)


@dataclass
class Services:
    store: MemoryStore
    codec: TokenCodec
    credentials: CredentialStore
    sessions: SessionAuthority
    login_tokens: LoginTokenAuthority
    gate: AuthenticationGate
    mailer: RecordingMailer
    clock: FakeClock


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def codec():
    return TokenCodec(TEST_SECRET)


@pytest.fixture
def fingerprint():
    return ClientFingerprint(ip_address="203.0.113.7", device="Windows:Google Chrome")


@pytest.fixture
def build_services(memory_store, codec, clock):
    """Wire the authorities over one store; keyword args go to SessionAuthority."""

    def _build(**session_options) -> Services:
        credentials = CredentialStore(memory_store)
        sessions = SessionAuthority(memory_store, codec, clock=clock, **session_options)
        mailer = RecordingMailer()
        login_tokens = LoginTokenAuthority(
            memory_store, codec, credentials, sessions, mailer=mailer, clock=clock
        )
        gate = AuthenticationGate(codec, credentials, login_tokens, sessions, clock=clock)
        return Services(
            store=memory_store,
            codec=codec,
            credentials=credentials,
            sessions=sessions,
            login_tokens=login_tokens,
            gate=gate,
            mailer=mailer,
            clock=clock,
        )

    return _build


@pytest.fixture
def services(build_services):
    return build_services()


@pytest.fixture
def sign_in(services, fingerprint):
    """Run the full email sign-in flow and return the redemption."""

    def _sign_in(email: str = "a@b.com"):
        request = services.login_tokens.request_login(email, fingerprint)
        services.login_tokens.decide(services.mailer.last_token_for(email), True)
        return services.login_tokens.redeem(request.handoff_token)

    return _sign_in
