"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, schema created fresh for each test
- A fixed clock, a recording notifier and an inline event bus wired to a
  fresh rule engine, installed as the process collaborators
- Small factories for projects, tasks and rules
"""
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import anyio
import pytest
from sqlalchemy.orm import Session, sessionmaker

from flowcore.core.deps import override
from flowcore.db.base import Base
from flowcore.db.session import build_engine
import flowcore.db.models  # noqa: F401  (registers the models)
from flowcore.schemas.automation import RuleCreate
from flowcore.schemas.task import ProjectCreate, TaskCreate
from flowcore.services import automation_service, task_service
from flowcore.services.automation_engine_adapters import DefaultRuleDomainAdapter
from flowcore.services.automation_engine_core import RuleEngine
from flowcore.services.event_bus import EventBus


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# =============================================================================
# Collaborators
# =============================================================================

class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


class RecordingNotifier:
    """Notifier that records sends; can be told to fail, decline or hang."""

    def __init__(self):
        self.sent: list[tuple[int, str, dict]] = []
        self.fail_with: Exception | None = None
        self.result = True
        self.delay: float = 0

    async def send(self, user_id: int, template_kind: str, params: dict) -> bool:
        if self.delay:
            await anyio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((user_id, template_kind, params))
        return self.result

    def kinds(self) -> list[str]:
        return [kind for _, kind, _ in self.sent]


@pytest.fixture
def clock() -> FixedClock:
    # 2026-01-05 is a Monday
    return FixedClock(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def rule_engine() -> RuleEngine:
    return RuleEngine(DefaultRuleDomainAdapter(), max_depth=3)


@pytest.fixture
def bus(rule_engine: RuleEngine) -> EventBus:
    event_bus = EventBus()
    event_bus.subscribe(rule_engine.on_event, name="rule_engine")
    return event_bus


@pytest.fixture(autouse=True)
def collaborators(clock, notifier, bus) -> Generator[None, None, None]:
    with override(clock=clock, notifier=notifier, event_bus=bus):
        yield


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def project(db):
    return task_service.create_project(db, ProjectCreate(name="Website relaunch"))


@pytest.fixture
def make_task(db, project):
    def _make(title: str = "Task", **kwargs):
        actor_id = kwargs.pop("actor_id", None)
        data = TaskCreate(project_id=kwargs.pop("project_id", project.id), title=title, **kwargs)
        return task_service.create_task(db, data, actor_id=actor_id)

    return _make


@pytest.fixture
def make_rule(db):
    def _make(**kwargs):
        kwargs.setdefault("name", "Rule")
        return automation_service.create_rule(db, RuleCreate(**kwargs), actor_id=1)

    return _make

