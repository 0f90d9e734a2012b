"""
Escalation — hands leads stuck too long in a sales stage to a senior owner.

A non-terminal lead in a sales/closer pipeline that has sat in its stage for
escalation.after_days is reassigned to the first senior/manager/coordinator
of its team (any active manager as a fallback), tagged `escalated`, and given
a reactivation task. An `escalation` history entry inside the dedupe window
suppresses a repeat.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from leadflow.config import ESCALATION_ROLES
from leadflow.engine.base import (
    AgentInfo, CreateNotification, CreateTask, LeadSnapshot, UpdateLead, WriteHistory,
    as_utc, hours_between,
)
from leadflow.engine.engine_config import get_setting

logger = logging.getLogger('engine.escalation')

ESCALATED_TAG = 'escalated'


def is_due(lead: LeadSnapshot, now: datetime, last_escalated_at: Optional[datetime] = None) -> bool:
    if lead.is_terminal:
        return False
    start = lead.stage_clock_start
    if start is None or hours_between(start, now) < float(get_setting('escalation', 'after_days')) * 24:
        return False
    if last_escalated_at is not None:
        window = timedelta(days=float(get_setting('escalation', 'dedupe_days')))
        if as_utc(last_escalated_at) >= as_utc(now) - window:
            return False
    return True


def pick_target(
    lead: LeadSnapshot,
    team_members: List[AgentInfo],
    fallback_managers: List[AgentInfo],
) -> Optional[AgentInfo]:
    """First escalation role present in the lead's team, else any manager."""
    candidates = [a for a in team_members if a.id != lead.assigned_to]
    for role in ESCALATION_ROLES:
        for agent in sorted(candidates, key=lambda a: a.id):
            if agent.role == role:
                return agent
    for agent in sorted(fallback_managers, key=lambda a: a.id):
        if agent.id != lead.assigned_to:
            return agent
    return None


def escalation_effects(
    lead: LeadSnapshot,
    target: AgentInfo,
    now: datetime,
    previous_owner: Optional[AgentInfo] = None,
) -> List:
    days = int(hours_between(lead.stage_clock_start, now) // 24)
    tags = list(lead.tags or [])
    if ESCALATED_TAG not in tags:
        tags.append(ESCALATED_TAG)

    effects = [
        UpdateLead(lead.id, {'assigned_to': target.id, 'tags': tags}),
        WriteHistory(
            lead_id=lead.id,
            action='escalation',
            title=f"Escalated to {target.name} after {days} days in stage",
            created_at=now,
            details={
                'from_agent_id': lead.assigned_to,
                'to_agent_id': target.id,
                'days_in_stage': days,
            },
        ),
        CreateNotification(
            agent_id=target.id,
            lead_id=lead.id,
            type='lead_received',
            title=f"Escalated lead: {lead.name}",
            message=f"{lead.name} was escalated to you after {days} days without progress.",
            created_at=now,
        ),
        CreateTask(
            lead_id=lead.id,
            assigned_to=target.id,
            title=f"Reactivate {lead.name}",
            description='Lead was escalated for lack of progress.',
            priority='high',
            due_at=now + timedelta(hours=float(get_setting('escalation', 'task_due_hours'))),
        ),
    ]
    if previous_owner is not None:
        effects.append(CreateNotification(
            agent_id=previous_owner.id,
            lead_id=lead.id,
            type='lead_escalated',
            title=f"{lead.name} was escalated",
            message=f"{lead.name} was reassigned to {target.name} after {days} days in stage.",
            created_at=now,
        ))
    return effects


def group_by_team(agents: List[AgentInfo]) -> Dict[Optional[int], List[AgentInfo]]:
    teams: Dict[Optional[int], List[AgentInfo]] = {}
    for agent in agents:
        teams.setdefault(agent.team_id, []).append(agent)
    return teams
