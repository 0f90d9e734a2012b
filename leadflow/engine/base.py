"""
Engine contracts — lead snapshots in, effects + a uniform result out.

The engine core never touches the database. Runners build LeadSnapshot values
from ORM rows, hand them to the evaluators/classifiers, and get back a list
of Effect values that leadflow.services.store applies in one place. That
keeps every classifier unit-testable with plain dataclasses.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ── Time helpers ──────────────────────────────────────────────────────────────

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo); normalize aware ones."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def hours_between(start: datetime, end: datetime) -> float:
    return (as_utc(end) - as_utc(start)).total_seconds() / 3600.0


# ── Snapshots ─────────────────────────────────────────────────────────────────

@dataclass
class LeadSnapshot:
    """Read-only view of a lead row as the engine sees it."""
    id: int
    name: str
    pipeline_id: int
    stage_id: int
    team_id: Optional[int] = None
    assigned_to: Optional[int] = None
    temperature: str = 'cold'
    tags: List[str] = field(default_factory=list)
    estimated_value: Optional[float] = None
    phone: str = ''
    stage_entered_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    last_contact_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    won_at: Optional[datetime] = None
    lost_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.won_at is not None or self.lost_at is not None

    @property
    def stage_clock_start(self) -> Optional[datetime]:
        """When the lead's current stage residency started (created_at if never moved)."""
        return as_utc(self.stage_entered_at or self.created_at)

    @property
    def first_name(self) -> str:
        parts = (self.name or '').split()
        return parts[0] if parts else ''


@dataclass(frozen=True)
class StageInfo:
    id: int
    pipeline_id: int
    name: str
    category: Optional[str] = None


@dataclass(frozen=True)
class AgentInfo:
    id: int
    name: str
    team_id: Optional[int] = None
    role: str = ''


@dataclass(frozen=True)
class InteractionSnapshot:
    created_at: datetime
    sentiment: Optional[str] = None


# ── Effects ───────────────────────────────────────────────────────────────────
# Each effect is one write the store adapter performs. Order matters: effects
# are applied in the order the engine emitted them.

@dataclass(frozen=True)
class UpdateLead:
    lead_id: int
    changes: Dict[str, Any]


@dataclass(frozen=True)
class UpdateTask:
    task_id: int
    changes: Dict[str, Any]


@dataclass(frozen=True)
class CreateTask:
    lead_id: int
    assigned_to: Optional[int]
    title: str
    due_at: datetime
    description: str = ''
    priority: str = 'medium'


@dataclass(frozen=True)
class CreateNotification:
    agent_id: Optional[int]
    lead_id: Optional[int]
    type: str
    title: str
    message: str
    created_at: datetime
    extra: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class WriteHistory:
    lead_id: int
    action: str
    title: str
    created_at: datetime
    details: Optional[Dict[str, Any]] = None
    from_stage_id: Optional[int] = None
    to_stage_id: Optional[int] = None


@dataclass(frozen=True)
class EnqueueMessage:
    lead_id: int
    phone: str
    channel: str
    content: str
    scheduled_for: datetime
    cadence_id: Optional[int] = None
    step_index: Optional[int] = None
    template_id: Optional[int] = None


@dataclass(frozen=True)
class RecordExecution:
    source_type: str
    source_id: int
    lead_id: int
    status: str
    executed_at: datetime
    result: Dict[str, Any] = field(default_factory=dict)
    step_index: Optional[int] = None


# ── Ledger contract ───────────────────────────────────────────────────────────

class Ledger(ABC):
    """
    Read side of the execution ledger.

    The SQL implementation lives in leadflow.services.store; tests use an
    in-memory fake.
    """

    @abstractmethod
    def latest_executions(
        self,
        source_type: str,
        source_id: int,
        lead_ids: List[int],
        step_index: Optional[int] = None,
    ) -> Dict[int, datetime]:
        """Map lead_id → most recent executed_at for this source (any status)."""
        ...


# ── Run result ────────────────────────────────────────────────────────────────

@dataclass
class EngineResult:
    """Uniform output from every engine run — becomes the HTTP response body."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    def record_error(self, message: str):
        self.failed += 1
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        out = {
            'processed': self.processed,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'errors': self.errors,
            'details': self.details,
        }
        out.update(self.meta)
        return out
