import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tiergate.core.config import Settings, settings

# Override settings for tests
settings.app_env = "development"
settings.free_daily_credits = 50
settings.pro_daily_credits = 3500

from tiergate.core.dependencies import get_gateway  # noqa: E402
from tiergate.db.base import Base  # noqa: E402
from tiergate.db.postgres import get_session_factory  # noqa: E402
from tiergate.gateway.gateway import AiGateway  # noqa: E402
from tiergate.gateway.retry import RetryPolicy  # noqa: E402
from tiergate.gateway.types import Backend, ChatResult  # noqa: E402
from tiergate.ledger import CreditLedger, SqlAccountStore  # noqa: E402
from tiergate.main import app  # noqa: E402
from tiergate.models import Account  # noqa: E402

# File-backed SQLite so concurrent sessions see each other's commits.
# NullPool gives every session its own connection.
_fd, TEST_DB_PATH = tempfile.mkstemp(suffix=".db")
os.close(_fd)
TEST_DB_URL = f"sqlite+aiosqlite:///{TEST_DB_PATH}"

test_engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=NullPool)
test_session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def pytest_sessionfinish(session, exitstatus):
    if os.path.exists(TEST_DB_PATH):
        os.unlink(TEST_DB_PATH)


@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test and drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


app.dependency_overrides[get_session_factory] = lambda: test_session_factory


# ---------------------------------------------------------------------------
# Scripted upstream doubles
# ---------------------------------------------------------------------------


class ScriptedAdapter:
    """Adapter double that replays scripted outcomes.

    ``outcomes`` feed ``complete``: a ChatResult or an exception to raise.
    ``streams`` feed ``stream_complete``: a list of chunks where any
    exception item is raised at that position.
    """

    def __init__(self, backend: Backend, outcomes=(), streams=()):
        self.backend = backend
        self.outcomes = list(outcomes)
        self.streams = list(streams)
        self.calls: list[str] = []
        self.closed = 0

    async def complete(self, messages, model_id, credential):
        self.calls.append(model_id)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def stream_complete(self, messages, model_id, credential):
        self.calls.append(model_id)
        script = self.streams.pop(0)
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed += 1


def make_result(content: str = "Hello world", model: str = "test-model", tokens: int | None = 30) -> ChatResult:
    return ChatResult(content=content, model=model, tokens_used=tokens, finish_reason="stop")


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        gemini_super_smart_api_key="test-gemini-super",
        gemini_pro_smart_api_key="test-gemini-pro",
        gemini_fallback_api_key="test-gemini-fallback",
        grok_api_key="test-grok",
        groq_api_key="test-groq",
        openai_api_key="test-openai",
        anthropic_api_key="test-anthropic",
        free_daily_credits=50,
        pro_daily_credits=3500,
    )


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_policy(sleeper: RecordingSleep) -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0, sleep=sleeper)


@pytest.fixture
def adapters() -> dict[Backend, ScriptedAdapter]:
    return {backend: ScriptedAdapter(backend) for backend in Backend}


@pytest.fixture
def gateway(test_settings: Settings, adapters, retry_policy: RetryPolicy) -> AiGateway:
    return AiGateway(test_settings, adapters=adapters, retry_policy=retry_policy)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> SqlAccountStore:
    return SqlAccountStore(test_session_factory)


@pytest.fixture
def ledger(store: SqlAccountStore, test_settings: Settings, clock: FrozenClock) -> CreditLedger:
    return CreditLedger(store, test_settings, clock=clock)


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def make_account():
    """Insert an account row and return its id."""

    async def _make(
        account_id: str = "acct-1",
        plan: str = "free",
        allowance: int = 50,
        consumed: int = 0,
        reset_at: datetime = NOW,
    ) -> str:
        async with test_session_factory() as session:
            session.add(
                Account(
                    id=account_id,
                    plan=plan,
                    daily_allowance=allowance,
                    daily_consumed=consumed,
                    allowance_reset_at=reset_at,
                )
            )
            await session.commit()
        return account_id

    return _make


@pytest.fixture
async def client(gateway: AiGateway) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_gateway] = lambda: gateway
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.pop(get_gateway, None)
