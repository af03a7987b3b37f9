"""SQLite database connection and operations for the Nexus lifecycle engine.

Provides:
    - Shared connection guarded by a re-entrant lock
    - Schema creation
    - CRUD operations for contacts, activities, messages and definitions
    - Optimistic (version / compare-and-set) writes for automation instances

Usage:
    from nexus.db.database import Database

    db = Database()
    db.initialize()

    contact_id = db.create_contact(Contact(sub_account_id="acct-1", name="Ada"))
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from nexus.core.config import get_config
from nexus.core.exceptions import DatabaseError, ValidationError
from nexus.core.logging import get_logger
from nexus.db.models import (
    ACTIVE_STATES,
    Activity,
    ActivityType,
    AutomationInstance,
    Channel,
    Contact,
    InstanceKind,
    InstanceState,
    Message,
    MessageStatus,
    SequenceDefinition,
    SequenceInstance,
    WorkflowDefinition,
    WorkflowInstance,
    parse_step,
    step_to_dict,
)

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

# Fixed-width text so string comparison in SQL matches time order
sqlite3.register_adapter(datetime, lambda value: value.strftime(TIMESTAMP_FORMAT))
sqlite3.register_converter(
    "timestamp", lambda raw: datetime.fromisoformat(raw.decode("utf-8"))
)

_ACTIVE_VALUES = tuple(state.value for state in ACTIVE_STATES)

# Columns written by save_instance. Engagement counters are excluded; they
# only change through increment_sequence_counter.
_INSTANCE_COLUMNS: dict[InstanceKind, tuple[str, ...]] = {
    InstanceKind.WORKFLOW: ("workflow_id",),
    InstanceKind.SEQUENCE: ("sequence_id", "stop_reason", "sent_count"),
}

_INSTANCE_TABLES = {
    InstanceKind.WORKFLOW: "workflow_instances",
    InstanceKind.SEQUENCE: "sequence_instances",
}

_SEQUENCE_COUNTERS = ("open_count", "click_count", "reply_count")

InstanceType = Union[WorkflowInstance, SequenceInstance]


def new_id() -> str:
    """Generate a primary key."""
    return uuid.uuid4().hex


class Database:
    """SQLite database manager.

    One connection is shared by every thread; each public method holds
    the lock for its whole statement batch.

    Attributes:
        db_path: Path to database file
    """

    def __init__(self, db_path: Optional[str] = None):
        """Initialize database.

        Args:
            db_path: Path to database file. Use ":memory:" for in-memory.
                    Defaults to config path.
        """
        if db_path is None:
            self.db_path = str(get_config().db_path)
        else:
            self.db_path = db_path

        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

                self._conn = sqlite3.connect(
                    self.db_path,
                    detect_types=sqlite3.PARSE_DECLTYPES,
                    check_same_thread=False,
                )
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA foreign_keys = ON")

                if self.db_path != ":memory:":
                    self._conn.execute("PRAGMA journal_mode = WAL")

            except sqlite3.Error as e:
                raise DatabaseError(f"Cannot connect to database: {e}") from e

        return self._conn

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        """Run a statement batch under the lock; commit or roll back."""
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise DatabaseError(f"Failed to {action}: {e}") from e

    def _fetch(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._get_connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise DatabaseError(f"Query failed: {e}") from e

    def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        rows = self._fetch(sql, params)
        return rows[0] if rows else None

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def initialize(self) -> None:
        """Create schema if not exists."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.executescript(self._get_schema_ddl())
                conn.commit()
                logger.info("Database initialized", extra={"context": {"path": self.db_path}})
            except sqlite3.Error as e:
                raise DatabaseError(f"Cannot initialize database: {e}") from e

    def _get_schema_ddl(self) -> str:
        """Return complete schema DDL."""
        return """
        CREATE TABLE IF NOT EXISTS contacts (
            id TEXT PRIMARY KEY,
            sub_account_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            email TEXT NOT NULL DEFAULT '',
            phone TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL DEFAULT 'Lead',
            source TEXT NOT NULL DEFAULT 'Direct',
            tags TEXT NOT NULL DEFAULT '[]',
            lead_score INTEGER NOT NULL DEFAULT 40
                CHECK (lead_score BETWEEN 0 AND 100),
            custom_fields TEXT NOT NULL DEFAULT '{}',
            last_activity TEXT NOT NULL DEFAULT 'Initialized',
            created_at TIMESTAMP
        );
        CREATE INDEX IF NOT EXISTS idx_contacts_account ON contacts(sub_account_id);
        CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email);
        CREATE INDEX IF NOT EXISTS idx_contacts_score ON contacts(lead_score);

        CREATE TABLE IF NOT EXISTS activities (
            id TEXT PRIMARY KEY,
            contact_id TEXT NOT NULL REFERENCES contacts(id),
            type TEXT NOT NULL,
            content TEXT NOT NULL,
            timestamp TIMESTAMP NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_activities_contact
            ON activities(contact_id, timestamp);

        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            contact_id TEXT NOT NULL REFERENCES contacts(id),
            channel TEXT NOT NULL,
            content TEXT NOT NULL,
            subject TEXT,
            status TEXT NOT NULL,
            provider_id TEXT,
            error TEXT,
            instance_kind TEXT,
            instance_id TEXT,
            step_index INTEGER,
            timestamp TIMESTAMP NOT NULL
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_sent_step
            ON messages(instance_kind, instance_id, step_index)
            WHERE status = 'sent' AND instance_id IS NOT NULL;

        CREATE TABLE IF NOT EXISTS workflows (
            id TEXT PRIMARY KEY,
            sub_account_id TEXT NOT NULL,
            name TEXT NOT NULL,
            trigger TEXT NOT NULL,
            steps TEXT NOT NULL DEFAULT '[]',
            is_active INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP
        );
        CREATE INDEX IF NOT EXISTS idx_workflows_trigger
            ON workflows(trigger, is_active);

        CREATE TABLE IF NOT EXISTS workflow_instances (
            id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL REFERENCES workflows(id),
            contact_id TEXT NOT NULL REFERENCES contacts(id),
            current_step_index INTEGER NOT NULL DEFAULT 0,
            state TEXT NOT NULL,
            wake_at TIMESTAMP,
            attempts INTEGER NOT NULL DEFAULT 0,
            context TEXT NOT NULL DEFAULT '{}',
            error TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            started_at TIMESTAMP,
            updated_at TIMESTAMP,
            completed_at TIMESTAMP
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_workflow_instances_active
            ON workflow_instances(workflow_id, contact_id)
            WHERE state IN ('running', 'waiting');
        CREATE INDEX IF NOT EXISTS idx_workflow_instances_due
            ON workflow_instances(state, wake_at);

        CREATE TABLE IF NOT EXISTS sequences (
            id TEXT PRIMARY KEY,
            sub_account_id TEXT NOT NULL,
            name TEXT NOT NULL,
            steps TEXT NOT NULL DEFAULT '[]',
            stop_on_reply INTEGER NOT NULL DEFAULT 1,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS sequence_instances (
            id TEXT PRIMARY KEY,
            sequence_id TEXT NOT NULL REFERENCES sequences(id),
            contact_id TEXT NOT NULL REFERENCES contacts(id),
            current_step_index INTEGER NOT NULL DEFAULT 0,
            state TEXT NOT NULL,
            wake_at TIMESTAMP,
            attempts INTEGER NOT NULL DEFAULT 0,
            context TEXT NOT NULL DEFAULT '{}',
            error TEXT,
            stop_reason TEXT,
            sent_count INTEGER NOT NULL DEFAULT 0,
            open_count INTEGER NOT NULL DEFAULT 0,
            click_count INTEGER NOT NULL DEFAULT 0,
            reply_count INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL DEFAULT 0,
            started_at TIMESTAMP,
            updated_at TIMESTAMP,
            completed_at TIMESTAMP
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_sequence_instances_active
            ON sequence_instances(sequence_id, contact_id)
            WHERE state IN ('running', 'waiting');
        CREATE INDEX IF NOT EXISTS idx_sequence_instances_due
            ON sequence_instances(state, wake_at);
        """

    # =========================================================================
    # ROW CONVERTERS
    # =========================================================================

    def _row_to_contact(self, row: sqlite3.Row) -> Contact:
        return Contact(
            id=row["id"],
            sub_account_id=row["sub_account_id"],
            name=row["name"],
            email=row["email"],
            phone=row["phone"],
            status=row["status"],
            source=row["source"],
            tags=json.loads(row["tags"] or "[]"),
            lead_score=row["lead_score"],
            custom_fields=json.loads(row["custom_fields"] or "{}"),
            last_activity=row["last_activity"],
            created_at=row["created_at"],
        )

    def _row_to_activity(self, row: sqlite3.Row) -> Activity:
        return Activity(
            id=row["id"],
            contact_id=row["contact_id"],
            type=ActivityType(row["type"]),
            content=row["content"],
            timestamp=row["timestamp"],
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        kind = row["instance_kind"]
        return Message(
            id=row["id"],
            contact_id=row["contact_id"],
            channel=Channel(row["channel"]),
            content=row["content"],
            subject=row["subject"],
            status=MessageStatus(row["status"]),
            provider_id=row["provider_id"],
            error=row["error"],
            instance_kind=InstanceKind(kind) if kind else None,
            instance_id=row["instance_id"],
            step_index=row["step_index"],
            timestamp=row["timestamp"],
        )

    def _row_to_workflow(self, row: sqlite3.Row) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=row["id"],
            sub_account_id=row["sub_account_id"],
            name=row["name"],
            trigger=row["trigger"],
            steps=[parse_step(s) for s in json.loads(row["steps"] or "[]")],
            is_active=bool(row["is_active"]),
            version=row["version"],
            created_at=row["created_at"],
        )

    def _row_to_sequence(self, row: sqlite3.Row) -> SequenceDefinition:
        return SequenceDefinition(
            id=row["id"],
            sub_account_id=row["sub_account_id"],
            name=row["name"],
            steps=[parse_step(s) for s in json.loads(row["steps"] or "[]")],
            stop_on_reply=bool(row["stop_on_reply"]),
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def _row_to_instance(self, kind: InstanceKind, row: sqlite3.Row) -> InstanceType:
        common: dict[str, Any] = {
            "id": row["id"],
            "contact_id": row["contact_id"],
            "current_step_index": row["current_step_index"],
            "state": InstanceState(row["state"]),
            "wake_at": row["wake_at"],
            "attempts": row["attempts"],
            "context": json.loads(row["context"] or "{}"),
            "error": row["error"],
            "version": row["version"],
            "started_at": row["started_at"],
            "updated_at": row["updated_at"],
            "completed_at": row["completed_at"],
        }
        if kind is InstanceKind.WORKFLOW:
            return WorkflowInstance(workflow_id=row["workflow_id"], **common)
        return SequenceInstance(
            sequence_id=row["sequence_id"],
            stop_reason=row["stop_reason"],
            sent_count=row["sent_count"],
            open_count=row["open_count"],
            click_count=row["click_count"],
            reply_count=row["reply_count"],
            **common,
        )

    # =========================================================================
    # CONTACT OPERATIONS
    # =========================================================================

    def create_contact(self, contact: Contact) -> str:
        """Create a contact record.

        Args:
            contact: Contact to create (id assigned if missing)

        Returns:
            Contact ID
        """
        contact.id = contact.id or new_id()
        contact.created_at = contact.created_at or datetime.utcnow()
        with self._transaction("create contact") as conn:
            conn.execute(
                """INSERT INTO contacts
                   (id, sub_account_id, name, email, phone, status, source, tags,
                    lead_score, custom_fields, last_activity, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    contact.id,
                    contact.sub_account_id,
                    contact.name,
                    contact.email,
                    contact.phone,
                    contact.status,
                    contact.source,
                    json.dumps(contact.tags),
                    contact.lead_score,
                    json.dumps(contact.custom_fields),
                    contact.last_activity,
                    contact.created_at,
                ),
            )
        logger.debug("Contact created", extra={"context": {"contact_id": contact.id}})
        return contact.id

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        """Get contact by ID."""
        row = self._fetch_one("SELECT * FROM contacts WHERE id = ?", (contact_id,))
        return self._row_to_contact(row) if row else None

    def find_contacts_by_email(
        self, email: str, sub_account_id: Optional[str] = None
    ) -> list[Contact]:
        """Contacts with an email (case-insensitive), oldest first, optionally within one tenant."""
        sql = "SELECT * FROM contacts WHERE LOWER(email) = ?"
        params: tuple = (email.strip().lower(),)
        if sub_account_id:
            sql += " AND sub_account_id = ?"
            params += (sub_account_id,)
        rows = self._fetch(sql + " ORDER BY created_at, rowid", params)
        return [self._row_to_contact(row) for row in rows]

    def find_contacts_by_phone(
        self, phone: str, sub_account_id: Optional[str] = None
    ) -> list[Contact]:
        """Contacts with an exact phone number, oldest first, optionally within one tenant."""
        sql = "SELECT * FROM contacts WHERE phone = ?"
        params: tuple = (phone.strip(),)
        if sub_account_id:
            sql += " AND sub_account_id = ?"
            params += (sub_account_id,)
        rows = self._fetch(sql + " ORDER BY created_at, rowid", params)
        return [self._row_to_contact(row) for row in rows]

    def update_contact(self, contact: Contact) -> bool:
        """Update a contact's profile fields. Lead score is left untouched."""
        if contact.id is None:
            return False
        with self._transaction("update contact") as conn:
            cursor = conn.execute(
                """UPDATE contacts SET
                   name = ?, email = ?, phone = ?, status = ?, source = ?,
                   tags = ?, custom_fields = ?, last_activity = ?
                   WHERE id = ?""",
                (
                    contact.name,
                    contact.email,
                    contact.phone,
                    contact.status,
                    contact.source,
                    json.dumps(contact.tags),
                    json.dumps(contact.custom_fields),
                    contact.last_activity,
                    contact.id,
                ),
            )
            return cursor.rowcount > 0

    def update_contact_status(self, contact_id: str, status: str) -> bool:
        with self._transaction("update contact status") as conn:
            cursor = conn.execute(
                "UPDATE contacts SET status = ? WHERE id = ?", (status, contact_id)
            )
            return cursor.rowcount > 0

    def update_lead_score(
        self, contact_id: str, expected: int, new_score: int, last_activity: str
    ) -> bool:
        """Set lead_score only if it still equals ``expected``.

        Returns:
            True if the row was updated, False if the score had changed
        """
        with self._transaction("update lead score") as conn:
            cursor = conn.execute(
                """UPDATE contacts SET lead_score = ?, last_activity = ?
                   WHERE id = ? AND lead_score = ?""",
                (new_score, last_activity, contact_id, expected),
            )
            return cursor.rowcount > 0

    def get_contacts_with_score_above(self, threshold: int = 0) -> list[Contact]:
        """Contacts whose lead score is strictly above threshold."""
        rows = self._fetch(
            "SELECT * FROM contacts WHERE lead_score > ? ORDER BY id", (threshold,)
        )
        return [self._row_to_contact(row) for row in rows]

    # =========================================================================
    # ACTIVITY OPERATIONS
    # =========================================================================

    def create_activity(self, activity: Activity) -> str:
        """Append an activity to a contact's timeline."""
        activity.id = activity.id or new_id()
        activity.timestamp = activity.timestamp or datetime.utcnow()
        with self._transaction("create activity") as conn:
            conn.execute(
                """INSERT INTO activities (id, contact_id, type, content, timestamp)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    activity.id,
                    activity.contact_id,
                    activity.type.value,
                    activity.content,
                    activity.timestamp,
                ),
            )
        return activity.id

    def get_activities(self, contact_id: str, limit: int = 50) -> list[Activity]:
        """Get activities for contact, most recent first."""
        rows = self._fetch(
            """SELECT * FROM activities WHERE contact_id = ?
               ORDER BY timestamp DESC, rowid DESC LIMIT ?""",
            (contact_id, limit),
        )
        return [self._row_to_activity(row) for row in rows]

    def has_activity_since(self, contact_id: str, since: datetime) -> bool:
        """Whether the contact has any activity at or after ``since``."""
        row = self._fetch_one(
            "SELECT 1 FROM activities WHERE contact_id = ? AND timestamp >= ? LIMIT 1",
            (contact_id, since),
        )
        return row is not None

    # =========================================================================
    # MESSAGE OPERATIONS
    # =========================================================================

    def create_message(self, message: Message) -> str:
        message.id = message.id or new_id()
        message.timestamp = message.timestamp or datetime.utcnow()
        with self._transaction("create message") as conn:
            conn.execute(
                """INSERT INTO messages
                   (id, contact_id, channel, content, subject, status, provider_id,
                    error, instance_kind, instance_id, step_index, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    message.id,
                    message.contact_id,
                    message.channel.value,
                    message.content,
                    message.subject,
                    message.status.value,
                    message.provider_id,
                    message.error,
                    message.instance_kind.value if message.instance_kind else None,
                    message.instance_id,
                    message.step_index,
                    message.timestamp,
                ),
            )
        return message.id

    def update_message_status(
        self,
        message_id: str,
        status: MessageStatus,
        provider_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        with self._transaction("update message") as conn:
            cursor = conn.execute(
                "UPDATE messages SET status = ?, provider_id = ?, error = ? WHERE id = ?",
                (status.value, provider_id, error, message_id),
            )
            return cursor.rowcount > 0

    def get_sent_message_for_step(
        self, kind: InstanceKind, instance_id: str, step_index: int
    ) -> Optional[Message]:
        """The sent message recorded for an instance step, if any."""
        row = self._fetch_one(
            """SELECT * FROM messages
               WHERE instance_kind = ? AND instance_id = ? AND step_index = ?
                 AND status = 'sent'""",
            (kind.value, instance_id, step_index),
        )
        return self._row_to_message(row) if row else None

    def get_message_by_provider_id(self, provider_id: str) -> Optional[Message]:
        """Look up a message by the provider's id (for delivery webhooks)."""
        row = self._fetch_one("SELECT * FROM messages WHERE provider_id = ? LIMIT 1", (provider_id,))
        return self._row_to_message(row) if row else None

    def get_messages(self, contact_id: str, limit: int = 50) -> list[Message]:
        """Messages for a contact, oldest first."""
        rows = self._fetch(
            """SELECT * FROM messages WHERE contact_id = ?
               ORDER BY timestamp, rowid LIMIT ?""",
            (contact_id, limit),
        )
        return [self._row_to_message(row) for row in rows]

    # =========================================================================
    # DEFINITION OPERATIONS
    # =========================================================================

    def create_workflow(self, workflow: WorkflowDefinition) -> str:
        workflow.id = workflow.id or new_id()
        workflow.created_at = workflow.created_at or datetime.utcnow()
        with self._transaction("create workflow") as conn:
            conn.execute(
                """INSERT INTO workflows
                   (id, sub_account_id, name, trigger, steps, is_active, version, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    workflow.id,
                    workflow.sub_account_id,
                    workflow.name,
                    workflow.trigger,
                    json.dumps([step_to_dict(s) for s in workflow.steps]),
                    int(workflow.is_active),
                    workflow.version,
                    workflow.created_at,
                ),
            )
        logger.info(
            "Workflow created",
            extra={"context": {"workflow_id": workflow.id, "trigger": workflow.trigger}},
        )
        return workflow.id

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        row = self._fetch_one("SELECT * FROM workflows WHERE id = ?", (workflow_id,))
        return self._row_to_workflow(row) if row else None

    def update_workflow(self, workflow: WorkflowDefinition) -> bool:
        """Update a workflow definition and bump its version."""
        if workflow.id is None:
            return False
        with self._transaction("update workflow") as conn:
            cursor = conn.execute(
                """UPDATE workflows SET
                   name = ?, trigger = ?, steps = ?, is_active = ?, version = version + 1
                   WHERE id = ?""",
                (
                    workflow.name,
                    workflow.trigger,
                    json.dumps([step_to_dict(s) for s in workflow.steps]),
                    int(workflow.is_active),
                    workflow.id,
                ),
            )
            updated = cursor.rowcount > 0
        if updated:
            workflow.version += 1
        return updated

    def get_active_workflows_for_trigger(
        self, trigger: str, sub_account_id: str
    ) -> list[WorkflowDefinition]:
        rows = self._fetch(
            """SELECT * FROM workflows
               WHERE trigger = ? AND sub_account_id = ? AND is_active = 1
               ORDER BY created_at, id""",
            (trigger, sub_account_id),
        )
        workflows = []
        for row in rows:
            try:
                workflows.append(self._row_to_workflow(row))
            except ValidationError as e:
                logger.error(
                    f"Skipping workflow with invalid steps: {e}",
                    extra={"context": {"workflow_id": row["id"], "trigger": trigger}},
                )
        return workflows

    def create_sequence(self, sequence: SequenceDefinition) -> str:
        sequence.id = sequence.id or new_id()
        sequence.created_at = sequence.created_at or datetime.utcnow()
        with self._transaction("create sequence") as conn:
            conn.execute(
                """INSERT INTO sequences
                   (id, sub_account_id, name, steps, stop_on_reply, is_active, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    sequence.id,
                    sequence.sub_account_id,
                    sequence.name,
                    json.dumps([step_to_dict(s) for s in sequence.steps]),
                    int(sequence.stop_on_reply),
                    int(sequence.is_active),
                    sequence.created_at,
                ),
            )
        return sequence.id

    def get_sequence(self, sequence_id: str) -> Optional[SequenceDefinition]:
        row = self._fetch_one("SELECT * FROM sequences WHERE id = ?", (sequence_id,))
        return self._row_to_sequence(row) if row else None

    def update_sequence(self, sequence: SequenceDefinition) -> bool:
        if sequence.id is None:
            return False
        with self._transaction("update sequence") as conn:
            cursor = conn.execute(
                """UPDATE sequences SET name = ?, steps = ?, stop_on_reply = ?, is_active = ?
                   WHERE id = ?""",
                (
                    sequence.name,
                    json.dumps([step_to_dict(s) for s in sequence.steps]),
                    int(sequence.stop_on_reply),
                    int(sequence.is_active),
                    sequence.id,
                ),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # INSTANCE OPERATIONS (workflow runs and sequence enrollments)
    # =========================================================================

    def _instance_values(self, instance: AutomationInstance) -> dict[str, Any]:
        values: dict[str, Any] = {
            "contact_id": instance.contact_id,
            "current_step_index": instance.current_step_index,
            "state": instance.state.value,
            "wake_at": instance.wake_at,
            "attempts": instance.attempts,
            "context": json.dumps(instance.context, default=str),
            "error": instance.error,
            "started_at": instance.started_at,
            "updated_at": instance.updated_at,
            "completed_at": instance.completed_at,
        }
        for column in _INSTANCE_COLUMNS[instance.kind]:
            values[column] = getattr(instance, column)
        return values

    def create_instance(self, instance: InstanceType) -> Optional[str]:
        """Insert a new instance.

        Returns:
            Instance ID, or None if the contact already has an active run
            of the same definition
        """
        instance.id = instance.id or new_id()
        values = self._instance_values(instance)
        values["id"] = instance.id
        values["version"] = instance.version
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        table = _INSTANCE_TABLES[instance.kind]

        with self._transaction(f"create {instance.kind.value} instance") as conn:
            try:
                conn.execute(
                    f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                    tuple(values.values()),
                )
            except sqlite3.IntegrityError:
                logger.debug(
                    "Active instance already exists",
                    extra={
                        "context": {
                            "kind": instance.kind.value,
                            "definition_id": instance.definition_id,
                            "contact_id": instance.contact_id,
                        }
                    },
                )
                return None
        return instance.id

    def get_instance(self, kind: InstanceKind, instance_id: str) -> Optional[InstanceType]:
        row = self._fetch_one(
            f"SELECT * FROM {_INSTANCE_TABLES[kind]} WHERE id = ?", (instance_id,)
        )
        return self._row_to_instance(kind, row) if row else None

    def get_instances_for_contact(
        self, kind: InstanceKind, contact_id: str, active_only: bool = False
    ) -> list[InstanceType]:
        sql = f"SELECT * FROM {_INSTANCE_TABLES[kind]} WHERE contact_id = ?"
        params: tuple = (contact_id,)
        if active_only:
            sql += " AND state IN (?, ?)"
            params += _ACTIVE_VALUES
        rows = self._fetch(sql + " ORDER BY started_at, rowid", params)
        return [self._row_to_instance(kind, row) for row in rows]

    def get_due_instances(
        self, kind: InstanceKind, now: datetime, limit: int = 100
    ) -> list[InstanceType]:
        """Waiting instances whose wake_at is at or before ``now``."""
        rows = self._fetch(
            f"""SELECT * FROM {_INSTANCE_TABLES[kind]}
                WHERE state = ? AND wake_at IS NOT NULL AND wake_at <= ?
                ORDER BY wake_at, rowid LIMIT ?""",
            (InstanceState.WAITING.value, now, limit),
        )
        return [self._row_to_instance(kind, row) for row in rows]

    def get_stale_instances(
        self, kind: InstanceKind, before: datetime, limit: int = 100
    ) -> list[InstanceType]:
        """Running instances last written before ``before``."""
        rows = self._fetch(
            f"""SELECT * FROM {_INSTANCE_TABLES[kind]}
                WHERE state = ? AND updated_at < ?
                ORDER BY updated_at, rowid LIMIT ?""",
            (InstanceState.RUNNING.value, before, limit),
        )
        return [self._row_to_instance(kind, row) for row in rows]

    def claim_instance(self, instance: InstanceType, now: datetime) -> bool:
        """Compare-and-set a due instance from waiting to running.

        On success the instance object reflects the claimed row.
        """
        table = _INSTANCE_TABLES[instance.kind]
        with self._transaction(f"claim {instance.kind.value} instance") as conn:
            cursor = conn.execute(
                f"""UPDATE {table}
                    SET state = ?, version = version + 1, updated_at = ?
                    WHERE id = ? AND version = ? AND state = ? AND wake_at <= ?""",
                (
                    InstanceState.RUNNING.value,
                    now,
                    instance.id,
                    instance.version,
                    InstanceState.WAITING.value,
                    now,
                ),
            )
            claimed = cursor.rowcount > 0
        if claimed:
            instance.state = InstanceState.RUNNING
            instance.version += 1
            instance.updated_at = now
        return claimed

    def save_instance(self, instance: InstanceType) -> bool:
        """Write an instance if nobody else has written it since it was read.

        Returns:
            True if saved (instance.version is bumped), False on a version conflict
        """
        values = self._instance_values(instance)
        assignments = ", ".join(f"{column} = ?" for column in values)
        table = _INSTANCE_TABLES[instance.kind]

        with self._transaction(f"save {instance.kind.value} instance") as conn:
            cursor = conn.execute(
                f"""UPDATE {table} SET {assignments}, version = version + 1
                    WHERE id = ? AND version = ?""",
                tuple(values.values()) + (instance.id, instance.version),
            )
            saved = cursor.rowcount > 0
        if saved:
            instance.version += 1
        return saved

    def increment_sequence_counter(self, contact_id: str, counter: str) -> int:
        """Atomically bump an engagement counter on a contact's active enrollments.

        Returns:
            Number of enrollments updated
        """
        if counter not in _SEQUENCE_COUNTERS:
            raise ValueError(f"Unknown sequence counter: {counter}")
        with self._transaction("increment sequence counter") as conn:
            cursor = conn.execute(
                f"""UPDATE sequence_instances SET {counter} = {counter} + 1
                    WHERE contact_id = ? AND state IN (?, ?)""",
                (contact_id,) + _ACTIVE_VALUES,
            )
            return cursor.rowcount
