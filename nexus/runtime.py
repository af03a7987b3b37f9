"""Engine wiring.

Builds the scoring engine, both automation engines, the event bus and the
decay scheduler around one database, clock and notification publisher.

Usage:
    from nexus.runtime import build_runtime

    runtime = build_runtime()
    runtime.bus.publish(runtime.bus.normalize(payload))

    orchestrator = runtime.build_orchestrator()
    orchestrator.start()
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from nexus.autonomous.decay import DecayScheduler
from nexus.autonomous.orchestrator import Orchestrator
from nexus.core.clock import Clock, SystemClock
from nexus.core.config import Config, get_config
from nexus.core.logging import get_logger
from nexus.core.tasks import TaskManager
from nexus.db.database import Database
from nexus.db.models import SEQUENCE_STEP_KINDS
from nexus.engine.event_bus import EventBus
from nexus.engine.notifications import NotificationPublisher
from nexus.engine.scoring import ScoringEngine
from nexus.engine.sequence import SequenceEngine
from nexus.engine.steps import StepExecutors
from nexus.engine.workflow import WorkflowEngine
from nexus.integrations.apify import ApifyClient
from nexus.integrations.base import ExternalActionCapability, SendCapability
from nexus.integrations.messaging import build_message_sender

logger = get_logger(__name__)


@dataclass
class LifecycleRuntime:
    """Every engine component, sharing one database and clock."""

    config: Config
    db: Database
    clock: Clock
    publisher: NotificationPublisher
    scoring: ScoringEngine
    workflows: WorkflowEngine
    sequences: SequenceEngine
    bus: EventBus
    decay: DecayScheduler
    tasks: TaskManager

    def tick(self) -> None:
        """Run one decay scan and one sweep of each automation engine."""
        self.decay.run_once()
        self.workflows.tick()
        self.sequences.tick()

    def build_orchestrator(self) -> Orchestrator:
        """An orchestrator with the engine's recurring tasks registered."""
        orchestrator = Orchestrator(self.config, self.clock)
        orchestrator.register_task(
            "workflow_tick",
            self.workflows.tick,
            timedelta(seconds=self.config.workflow_tick_seconds),
        )
        orchestrator.register_task(
            "sequence_tick",
            self.sequences.tick,
            timedelta(seconds=self.config.sequence_tick_seconds),
        )
        orchestrator.register_task("score_decay", self.decay.run_once, self.config.decay_interval)
        return orchestrator

    def close(self) -> None:
        self.tasks.shutdown(wait=True)
        self.db.close()


def build_runtime(
    config: Optional[Config] = None,
    db: Optional[Database] = None,
    clock: Optional[Clock] = None,
    sender: Optional[SendCapability] = None,
    actions: Optional[ExternalActionCapability] = None,
) -> LifecycleRuntime:
    """Wire the engine.

    Args:
        config: Defaults to get_config()
        db: Defaults to a database at config.db_path (initialized here)
        clock: Defaults to SystemClock
        sender: Defaults to the configured relay or dry-run provider
        actions: Defaults to Apify when APIFY_TOKEN is set

    Returns:
        LifecycleRuntime
    """
    config = config or get_config()
    clock = clock or SystemClock()
    if db is None:
        db = Database(str(config.db_path))
    db.initialize()

    if sender is None:
        sender = build_message_sender(db, config)
    if actions is None and config.apify_token:
        actions = ApifyClient(config)

    publisher = NotificationPublisher(clock)
    scoring = ScoringEngine(db, publisher, clock)
    executors = StepExecutors(db, sender, actions, config)
    workflows = WorkflowEngine(db, executors.registry(), publisher, clock, config)
    sequences = SequenceEngine(
        db, executors.registry(SEQUENCE_STEP_KINDS), publisher, clock, config
    )
    tasks = TaskManager()
    bus = EventBus(db, scoring, workflows, sequences, clock, tasks)
    decay = DecayScheduler(db, scoring, clock, config)

    logger.info(
        "Lifecycle engine wired",
        extra={
            "context": {
                "db_path": db.db_path,
                "external_actions": actions is not None,
            }
        },
    )
    return LifecycleRuntime(
        config=config,
        db=db,
        clock=clock,
        publisher=publisher,
        scoring=scoring,
        workflows=workflows,
        sequences=sequences,
        bus=bus,
        decay=decay,
        tasks=tasks,
    )
