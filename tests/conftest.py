import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("IDENTITY_PROVIDER", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REFRESH_COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.config import Settings  # noqa: E402
from authgate.service.auth import AuthService  # noqa: E402
from authgate.service.identity import MemoryIdentityProvider  # noqa: E402
from authgate.service.rate_limit import RateLimiter  # noqa: E402
from authgate.service.refresh import RefreshCoordinator  # noqa: E402
from authgate.service.revocation import RevocationService  # noqa: E402
from authgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from authgate.service.signing import SigningKeyProvider  # noqa: E402
from authgate.service.tokens import TokenIssuer, TokenVerifier  # noqa: E402
from authgate.storage.memory import MemoryBackend  # noqa: E402
from authgate.storage.sessions import SessionStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Controllable wall clock; components take it via ``clock=``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def _test_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": TEST_SECRET,
        "identity_provider": "memory",
        "use_memory_store": True,
        "test_mode": True,
        "refresh_cookie_secure": False,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def make_settings():
    return _test_settings


@pytest.fixture
def settings():
    return _test_settings()


class Stack:
    """Every service component wired together on a shared fake clock."""

    def __init__(self, settings: Settings, clock: FakeClock, backend=None):
        self.settings = settings
        self.clock = clock
        self.backend = backend if backend is not None else MemoryBackend(clock=clock)
        self.provider = MemoryIdentityProvider(clock=clock)
        self.keys = SigningKeyProvider.from_settings(settings)
        self.sessions = SessionStore(self.backend, settings, clock=clock)
        self.issuer = TokenIssuer(settings, self.keys, clock=clock)
        self.verifier = TokenVerifier(settings, self.keys, sessions=self.sessions, clock=clock)
        self.refresher = RefreshCoordinator(
            self.sessions,
            self.issuer,
            self.verifier,
            self.provider,
            reuse_grace_seconds=settings.refresh_reuse_grace_seconds,
            clock=clock,
        )
        self.revocation = RevocationService(
            self.sessions,
            self.provider,
            revoke_provider_grants=settings.revoke_provider_grants,
        )
        self.rate_limiter = RateLimiter.from_settings(self.backend, settings, clock=clock)
        self.auth = AuthService(
            settings,
            self.provider,
            self.sessions,
            self.keys,
            self.issuer,
            self.verifier,
            self.refresher,
            self.revocation,
        )


class YieldingBackend:
    """MemoryBackend that suspends before every call, like a network client.

    Without a suspension point ``asyncio.gather`` runs coroutines one after
    another against the memory store, so races never interleave.
    """

    def __init__(self, inner: MemoryBackend):
        self._inner = inner

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if not inspect.iscoroutinefunction(attr):
            return attr

        async def call(*args, **kwargs):
            await asyncio.sleep(0)
            return await attr(*args, **kwargs)

        return call


@pytest.fixture
def yielding_backend(clock):
    return YieldingBackend(MemoryBackend(clock=clock))


@pytest.fixture
def stack(settings, clock):
    return Stack(settings, clock)


@pytest.fixture
def yielding_stack(settings, clock, yielding_backend):
    return Stack(settings, clock, backend=yielding_backend)


@pytest.fixture
def make_stack(clock):
    def _make(settings: Settings) -> Stack:
        return Stack(settings, clock)

    return _make


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
