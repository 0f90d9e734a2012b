"""
Lead Store adapter — ORM rows in, engine snapshots out, effects applied back.

Everything the engine reads comes through the loaders here and everything it
writes goes through apply_effects(). Store-wide read failures are raised as
UpstreamError; per-lead write failures are isolated in a SAVEPOINT by
apply_isolated() so one bad lead never rolls back its neighbours.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, false, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from leadflow.config import COORDINATOR_ROLES, DISTRIBUTION_ROLES, ESCALATION_ROLES
from leadflow.engine.base import (
    AgentInfo, CreateNotification, CreateTask, EnqueueMessage, InteractionSnapshot,
    LeadSnapshot, Ledger, RecordExecution, StageInfo, UpdateLead, UpdateTask, WriteHistory,
)
from leadflow.errors import NotFoundError, UpstreamError, ValidationError
from leadflow.models.execution import ExecutionRecord
from leadflow.models.history import HistoryEntry
from leadflow.models.interaction import Interaction
from leadflow.models.lead import Lead
from leadflow.models.notification import Notification
from leadflow.models.pipeline import Stage
from leadflow.models.task import Task
from leadflow.models.team import Agent
from leadflow.services.dispatch import enqueue_message

logger = logging.getLogger('services.store')


@contextmanager
def store_errors(what: str):
    """Turn database failures while loading a batch into UpstreamError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("Lead store failure while %s: %s", what, e)
        raise UpstreamError(f"Lead store unavailable while {what}")


# ── Snapshots ─────────────────────────────────────────────────────────────────

def snapshot_lead(row: Lead) -> LeadSnapshot:
    return LeadSnapshot(
        id=row.id,
        name=row.name or '',
        pipeline_id=row.pipeline_id,
        stage_id=row.stage_id,
        team_id=row.team_id,
        assigned_to=row.assigned_to,
        temperature=row.temperature or 'cold',
        tags=list(row.tags or []),
        estimated_value=row.estimated_value,
        phone=row.phone or '',
        stage_entered_at=row.stage_entered_at,
        last_activity_at=row.last_activity_at,
        last_contact_at=row.last_contact_at,
        created_at=row.created_at,
        won_at=row.won_at,
        lost_at=row.lost_at,
    )


def snapshot_agent(row: Agent) -> AgentInfo:
    return AgentInfo(id=row.id, name=row.name, team_id=row.team_id, role=row.role)


# ── Loaders ───────────────────────────────────────────────────────────────────

def active_leads(pipeline_id=None, stage_id=None, team_id=None, lead_id=None, unassigned=False):
    """Select statement for non-terminal leads, oldest id first."""
    stmt = select(Lead).where(Lead.won_at.is_(None)).where(Lead.lost_at.is_(None))
    if pipeline_id is not None:
        stmt = stmt.where(Lead.pipeline_id == pipeline_id)
    if stage_id is not None:
        stmt = stmt.where(Lead.stage_id == stage_id)
    if team_id is not None:
        stmt = stmt.where(Lead.team_id == team_id)
    if lead_id is not None:
        stmt = stmt.where(Lead.id == lead_id)
    if unassigned:
        stmt = stmt.where(Lead.assigned_to.is_(None))
    return stmt.order_by(Lead.id)


def skip_recently_executed(stmt, source_type: str, source_id: int, since: datetime):
    """Drop leads that already have a ledger row for this source since `since`."""
    recent = (
        select(ExecutionRecord.id)
        .where(ExecutionRecord.source_type == source_type)
        .where(ExecutionRecord.source_id == source_id)
        .where(ExecutionRecord.lead_id == Lead.id)
        .where(ExecutionRecord.executed_at >= since)
    )
    return stmt.where(~recent.exists())


def stage_clock():
    """SQL twin of LeadSnapshot.stage_clock_start."""
    return func.coalesce(Lead.stage_entered_at, Lead.created_at)


def trigger_candidates(stmt, trigger, now: datetime):
    """
    Narrow a lead query to leads whose time/state trigger already holds at `now`.

    Applied before the batch limit so leads that cannot fire never crowd out
    the ones that can. stage_entry is covered by the rule's stage scope and
    scheduled triggers do not depend on the lead, so both pass through.
    """
    if trigger.type == 'time_in_stage':
        return stmt.where(stage_clock() <= now - timedelta(days=trigger.max_days))
    if trigger.type == 'no_contact':
        cutoff = now - timedelta(hours=trigger.hours)
        return stmt.where(or_(Lead.last_contact_at.is_(None), Lead.last_contact_at <= cutoff))
    if trigger.type == 'temperature_change':
        return stmt.where(Lead.temperature == trigger.temperature)
    return stmt


def due_cadence_steps(stmt, cadence_id: int, steps: Iterable, now: datetime):
    """
    Narrow a lead query to leads with a cadence step due today.

    `steps` holds (step_index, day_offset) pairs. A step is due when the lead
    is exactly day_offset whole days into its stage and the ledger has no row
    for that step since the stage was entered.
    """
    start = stage_clock()
    due = []
    for step_index, day_offset in steps:
        fired = (
            select(ExecutionRecord.id)
            .where(ExecutionRecord.source_type == 'cadence')
            .where(ExecutionRecord.source_id == cadence_id)
            .where(ExecutionRecord.step_index == step_index)
            .where(ExecutionRecord.lead_id == Lead.id)
            .where(ExecutionRecord.executed_at >= start)
        )
        due.append(and_(
            start > now - timedelta(days=day_offset + 1),
            start <= now - timedelta(days=day_offset),
            ~fired.exists(),
        ))
    if not due:
        return stmt.where(false())
    return stmt.where(or_(*due))


def load_leads(session, stmt, limit: int, page: int = 0) -> List[LeadSnapshot]:
    rows = session.execute(stmt.limit(limit).offset(page * limit)).scalars().all()
    return [snapshot_lead(r) for r in rows]


class LeadPager:
    """
    Walks up to max_pages pages of a lead query starting at start_page.

    Stops early on a short page. After iteration `next_page` tells the
    scheduler where to resume, or is None when the scan reached the end.
    """

    def __init__(self, session, stmt, limit: int, start_page: int = 0, max_pages: int = 1):
        self.session = session
        self.stmt = stmt
        self.limit = limit
        self.start_page = start_page
        self.max_pages = max_pages
        self.next_page = None
        self.pages_read = 0

    def __iter__(self):
        for page in range(self.start_page, self.start_page + self.max_pages):
            with store_errors('loading leads'):
                leads = load_leads(self.session, self.stmt, self.limit, page)
            self.pages_read += 1
            if leads:
                yield page, leads
            if len(leads) < self.limit:
                self.next_page = None
                return
            self.next_page = page + 1


def load_stages(session) -> Dict[int, StageInfo]:
    rows = session.execute(select(Stage)).scalars().all()
    return {s.id: StageInfo(id=s.id, pipeline_id=s.pipeline_id, name=s.name, category=s.category) for s in rows}


def load_agents(session, roles: Iterable[str], team_id=None) -> List[AgentInfo]:
    stmt = select(Agent).where(Agent.is_active.is_(True)).where(Agent.role.in_(list(roles)))
    if team_id is not None:
        stmt = stmt.where(Agent.team_id == team_id)
    return [snapshot_agent(a) for a in session.execute(stmt.order_by(Agent.id)).scalars().all()]


def distribution_agents(session, team_id=None) -> Dict[int, List[AgentInfo]]:
    """Active agents eligible for new leads, grouped by team."""
    by_team: Dict[int, List[AgentInfo]] = {}
    for agent in load_agents(session, DISTRIBUTION_ROLES, team_id):
        if agent.team_id is not None:
            by_team.setdefault(agent.team_id, []).append(agent)
    return by_team


def escalation_agents(session) -> List[AgentInfo]:
    return load_agents(session, ESCALATION_ROLES)


def coordinator_ids(session) -> List[int]:
    return [a.id for a in load_agents(session, COORDINATOR_ROLES)]


def agent_loads(session, agent_ids: List[int]) -> Dict[int, int]:
    """Active (non-terminal) lead count per agent."""
    if not agent_ids:
        return {}
    rows = session.execute(
        select(Lead.assigned_to, func.count(Lead.id))
        .where(Lead.assigned_to.in_(agent_ids))
        .where(Lead.won_at.is_(None))
        .where(Lead.lost_at.is_(None))
        .group_by(Lead.assigned_to)
    ).all()
    loads = {agent_id: 0 for agent_id in agent_ids}
    loads.update({agent_id: count for agent_id, count in rows})
    return loads


def recent_interactions(session, lead_ids: List[int], since: datetime) -> Dict[int, List[InteractionSnapshot]]:
    if not lead_ids:
        return {}
    rows = session.execute(
        select(Interaction)
        .where(Interaction.lead_id.in_(lead_ids))
        .where(Interaction.created_at >= since)
    ).scalars().all()
    out: Dict[int, List[InteractionSnapshot]] = {lead_id: [] for lead_id in lead_ids}
    for r in rows:
        out[r.lead_id].append(InteractionSnapshot(created_at=r.created_at, sentiment=r.sentiment))
    return out


def recent_notifications(session, lead_ids: List[int], types: List[str], since: datetime) -> Dict[int, Dict[str, datetime]]:
    """lead_id → {notification type → latest created_at} inside the window."""
    if not lead_ids:
        return {}
    rows = session.execute(
        select(Notification.lead_id, Notification.type, func.max(Notification.created_at))
        .where(Notification.lead_id.in_(lead_ids))
        .where(Notification.type.in_(types))
        .where(Notification.created_at >= since)
        .group_by(Notification.lead_id, Notification.type)
    ).all()
    out: Dict[int, Dict[str, datetime]] = {}
    for lead_id, ntype, latest in rows:
        out.setdefault(lead_id, {})[ntype] = latest
    return out


def latest_history(session, lead_ids: List[int], action: str, since: datetime) -> Dict[int, datetime]:
    if not lead_ids:
        return {}
    rows = session.execute(
        select(HistoryEntry.lead_id, func.max(HistoryEntry.created_at))
        .where(HistoryEntry.lead_id.in_(lead_ids))
        .where(HistoryEntry.action == action)
        .where(HistoryEntry.created_at >= since)
        .group_by(HistoryEntry.lead_id)
    ).all()
    return {lead_id: latest for lead_id, latest in rows}


# ── Ledger ────────────────────────────────────────────────────────────────────

class SqlLedger(Ledger):
    """Execution ledger backed by the execution_records table."""

    def __init__(self, session):
        self.session = session

    def latest_executions(self, source_type, source_id, lead_ids, step_index=None):
        if not lead_ids:
            return {}
        stmt = (
            select(ExecutionRecord.lead_id, func.max(ExecutionRecord.executed_at))
            .where(ExecutionRecord.source_type == source_type)
            .where(ExecutionRecord.source_id == source_id)
            .where(ExecutionRecord.lead_id.in_(lead_ids))
        )
        if step_index is not None:
            stmt = stmt.where(ExecutionRecord.step_index == step_index)
        rows = self.session.execute(stmt.group_by(ExecutionRecord.lead_id)).all()
        return {lead_id: latest for lead_id, latest in rows}


# ── Effects ───────────────────────────────────────────────────────────────────

def _update_lead(session, effect: UpdateLead):
    lead = session.get(Lead, effect.lead_id)
    if lead is None:
        raise NotFoundError(f"lead {effect.lead_id} not found")
    if lead.is_terminal:
        raise ValidationError(f"lead {effect.lead_id} is closed")
    for field, value in effect.changes.items():
        setattr(lead, field, value)


def _update_task(session, effect: UpdateTask):
    task = session.get(Task, effect.task_id)
    if task is None:
        raise NotFoundError(f"task {effect.task_id} not found")
    for field, value in effect.changes.items():
        setattr(task, field, value)


def _create_task(session, effect: CreateTask):
    session.add(Task(
        lead_id=effect.lead_id,
        assigned_to=effect.assigned_to,
        title=effect.title,
        description=effect.description,
        priority=effect.priority,
        status='pending',
        due_at=effect.due_at,
    ))


def _create_notification(session, effect: CreateNotification):
    session.add(Notification(
        agent_id=effect.agent_id,
        lead_id=effect.lead_id,
        type=effect.type,
        title=effect.title,
        message=effect.message,
        extra=effect.extra,
        created_at=effect.created_at,
    ))


def _write_history(session, effect: WriteHistory):
    session.add(HistoryEntry(
        lead_id=effect.lead_id,
        action=effect.action,
        title=effect.title,
        details=effect.details,
        from_stage_id=effect.from_stage_id,
        to_stage_id=effect.to_stage_id,
        created_at=effect.created_at,
    ))


def _enqueue_message(session, effect: EnqueueMessage):
    enqueue_message(
        session,
        lead_id=effect.lead_id,
        phone=effect.phone,
        channel=effect.channel,
        content=effect.content,
        scheduled_for=effect.scheduled_for,
        cadence_id=effect.cadence_id,
        step_index=effect.step_index,
        template_id=effect.template_id,
    )


def _record_execution(session, effect: RecordExecution):
    session.add(ExecutionRecord(
        source_type=effect.source_type,
        source_id=effect.source_id,
        step_index=effect.step_index,
        lead_id=effect.lead_id,
        status=effect.status,
        result=effect.result,
        executed_at=effect.executed_at,
    ))


_APPLIERS = {
    UpdateLead: _update_lead,
    UpdateTask: _update_task,
    CreateTask: _create_task,
    CreateNotification: _create_notification,
    WriteHistory: _write_history,
    EnqueueMessage: _enqueue_message,
    RecordExecution: _record_execution,
}


def apply_effects(session, effects: Iterable):
    """Apply effects in order inside the caller's transaction."""
    for effect in effects:
        applier = _APPLIERS.get(type(effect))
        if applier is None:
            raise TypeError(f"no applier for effect {type(effect).__name__}")
        applier(session, effect)
    session.flush()


def apply_isolated(session, effects: Iterable, label: Optional[str] = None):
    """
    Apply one unit of work (typically one lead) inside a SAVEPOINT.

    On failure only that savepoint is rolled back and the error re-raised for
    the runner to record.
    """
    effects = list(effects)
    if not effects:
        return
    with session.begin_nested():
        apply_effects(session, effects)
    logger.debug("Applied %d effect(s) for %s", len(effects), label or 'unit')
