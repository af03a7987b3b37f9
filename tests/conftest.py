"""Shared pytest fixtures for Nexus lifecycle engine tests.

Fixtures:
    - memory_db / temp_db: Fresh SQLite databases
    - clock: ManualClock at 2026-01-05 09:00
    - test_config: Configuration with temp paths and dry-run sending
    - sender / actions: Scripted send and external-action capabilities
    - runtime: Fully wired engine over memory_db, clock, sender and actions
    - notifications: Every notification published by the runtime
    - make_contact: Factory for stored contacts
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest

from nexus.core.clock import ManualClock
from nexus.core.config import Config, reset_config
from nexus.core.services import reset_service_registry
from nexus.db.database import Database
from nexus.db.models import Channel, Contact
from nexus.integrations.base import (
    ActionResult,
    ActionStatus,
    ExternalActionCapability,
    SendCapability,
    SendResult,
)
from nexus.runtime import LifecycleRuntime, build_runtime

T0 = datetime(2026, 1, 5, 9, 0, 0)


class FakeSender(SendCapability):
    """Send capability that records calls.

    Attributes:
        sent: (contact_id, channel, content, subject) per successful call
        results: Queued SendResults (or exceptions to raise), consumed in order
        always_raise: Exception raised on every call when set
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, Channel, str, Optional[str]]] = []
        self.calls = 0
        self.results: list[Any] = []
        self.always_raise: Optional[Exception] = None

    def send(
        self,
        contact_id: str,
        channel: Channel,
        content: str,
        subject: Optional[str] = None,
    ) -> SendResult:
        self.calls += 1
        if self.always_raise is not None:
            raise self.always_raise
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            if not result.success:
                return result
        self.sent.append((contact_id, channel, content, subject))
        return SendResult(success=True, provider_id=f"fake-{self.calls}")


class FakeActions(ExternalActionCapability):
    """External action capability with scripted answers.

    Attributes:
        invoke_results: Queued results for invoke()
        check_results: Queued results for check()
        invoked: (actor_id, input) per invoke call
        checked: run ids polled
    """

    def __init__(self) -> None:
        self.invoke_results: list[Any] = []
        self.check_results: list[Any] = []
        self.invoked: list[tuple[str, dict[str, Any]]] = []
        self.checked: list[str] = []

    def _next(self, queue: list[Any]) -> ActionResult:
        result = queue.pop(0) if queue else ActionResult(status=ActionStatus.SUCCESS)
        if isinstance(result, Exception):
            raise result
        return result

    def invoke(self, actor_id: str, input: dict[str, Any]) -> ActionResult:
        self.invoked.append((actor_id, input))
        return self._next(self.invoke_results)

    def check(self, run_id: str) -> ActionResult:
        self.checked.append(run_id)
        return self._next(self.check_results)


@pytest.fixture(autouse=True)
def _reset_singletons() -> Generator[None, None, None]:
    """Keep cached config and service registry from leaking between tests."""
    yield
    reset_config()
    reset_service_registry()


@pytest.fixture
def temp_db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a temporary database for testing.

    Yields:
        Database connected to temp file, cleaned up after test
    """
    db = Database(str(tmp_path / "test.db"))
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def memory_db() -> Generator[Database, None, None]:
    """Create an in-memory database for fast tests.

    Yields:
        Database using :memory:, no cleanup needed
    """
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Test configuration with temp paths."""
    return Config(
        db_path=tmp_path / "test.db",
        log_path=tmp_path / "logs",
        send_max_retries=3,
        retry_base_seconds=60,
        retry_max_seconds=3600,
        action_poll_seconds=60,
        dry_run=True,
        debug=True,
    )


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def actions() -> FakeActions:
    return FakeActions()


@pytest.fixture
def runtime(
    test_config: Config,
    memory_db: Database,
    clock: ManualClock,
    sender: FakeSender,
    actions: FakeActions,
) -> Generator[LifecycleRuntime, None, None]:
    """Engine wired around the in-memory database and fakes."""
    rt = build_runtime(test_config, db=memory_db, clock=clock, sender=sender, actions=actions)
    yield rt
    rt.tasks.shutdown(wait=True)


@pytest.fixture
def notifications(runtime: LifecycleRuntime) -> list[dict[str, Any]]:
    """Notifications published by the runtime, in order."""
    received: list[dict[str, Any]] = []
    runtime.publisher.subscribe(received.append)
    return received


@pytest.fixture
def make_contact(memory_db: Database) -> Callable[..., Contact]:
    """Factory: create and store a contact.

    Defaults to tenant 'acct-1', name 'Ada Lovelace', an email address and
    a phone number.
    """

    def _make(**overrides: Any) -> Contact:
        values: dict[str, Any] = {
            "sub_account_id": "acct-1",
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "phone": "+15125550100",
            "created_at": T0 - timedelta(days=30),
        }
        values.update(overrides)
        contact = Contact(**values)
        memory_db.create_contact(contact)
        return contact

    return _make


# Markers for different test types
def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "integration: marks tests requiring external services")
