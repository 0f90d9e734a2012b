"""
Distribution Balancer — load-balanced round-robin assignment of new leads.

Per team, agents are ordered by current load (active lead count, ties by
agent id) and a cursor walks that order. Each assignment bumps the agent's
load in memory right away. The order is re-sorted from the live loads at
the start of every full pass of the cursor, so equally loaded agents end a
run at most one lead apart and an idle agent is always picked first.

Loads and cursors live only for the duration of one run.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from leadflow.engine.base import (
    AgentInfo, CreateNotification, CreateTask, LeadSnapshot, UpdateLead, WriteHistory,
)
from leadflow.engine.engine_config import get_setting

logger = logging.getLogger('engine.distribution')


@dataclass
class Assignment:
    lead: LeadSnapshot
    agent: AgentInfo

    def to_dict(self):
        return {
            'lead_id': self.lead.id,
            'lead_name': self.lead.name,
            'agent_id': self.agent.id,
            'agent_name': self.agent.name,
            'team_id': self.agent.team_id,
        }


class DistributionBalancer:
    """Round-robin over load-sorted agents, one cursor per team."""

    def __init__(self, agents_by_team: Dict[int, List[AgentInfo]], loads: Dict[int, int]):
        self.agents_by_team = agents_by_team
        self.loads = {agent.id: loads.get(agent.id, 0)
                      for agents in agents_by_team.values() for agent in agents}
        self._order: Dict[int, List[AgentInfo]] = {}
        self._cursor: Dict[int, int] = {}

    def pick(self, team_id) -> Optional[AgentInfo]:
        agents = self.agents_by_team.get(team_id) or []
        if not agents:
            return None

        cursor = self._cursor.get(team_id, 0)
        if cursor % len(agents) == 0:
            self._order[team_id] = sorted(agents, key=lambda a: (self.loads[a.id], a.id))

        agent = self._order[team_id][cursor % len(agents)]
        self._cursor[team_id] = cursor + 1
        self.loads[agent.id] += 1
        return agent


def distribute(
    leads: List[LeadSnapshot],
    agents_by_team: Dict[int, List[AgentInfo]],
    loads: Dict[int, int],
) -> Tuple[List[Assignment], List[dict]]:
    """
    Assign each unassigned, non-terminal lead to an agent of its team.

    Returns (assignments, skipped) where skipped entries carry a reason.
    """
    balancer = DistributionBalancer(agents_by_team, loads)
    assignments = []
    skipped = []

    for lead in leads:
        if lead.is_terminal:
            skipped.append({'lead_id': lead.id, 'reason': 'terminal'})
            continue
        if lead.assigned_to is not None:
            skipped.append({'lead_id': lead.id, 'reason': 'already assigned'})
            continue
        if lead.team_id is None:
            skipped.append({'lead_id': lead.id, 'reason': 'no team'})
            continue

        agent = balancer.pick(lead.team_id)
        if agent is None:
            logger.info("No eligible agent for team %s (lead %s)", lead.team_id, lead.id)
            skipped.append({'lead_id': lead.id, 'reason': f'no eligible agent in team {lead.team_id}'})
            continue
        assignments.append(Assignment(lead=lead, agent=agent))

    return assignments, skipped


def assignment_effects(assignment: Assignment, now: datetime) -> List:
    """Owner update, history, agent notification and the first-contact task."""
    lead, agent = assignment.lead, assignment.agent
    minutes = float(get_setting('distribution', 'first_contact_minutes'))
    return [
        UpdateLead(lead.id, {'assigned_to': agent.id, 'first_contact_at': now}),
        WriteHistory(
            lead_id=lead.id,
            action='auto_assignment',
            title=f"Assigned to {agent.name}",
            created_at=now,
            details={'agent_id': agent.id, 'team_id': agent.team_id},
        ),
        CreateNotification(
            agent_id=agent.id,
            lead_id=lead.id,
            type='lead_assigned',
            title=f"New lead: {lead.name}",
            message=f"{lead.name} was assigned to you. Make first contact within {minutes:g} minutes.",
            created_at=now,
        ),
        CreateTask(
            lead_id=lead.id,
            assigned_to=agent.id,
            title=f"First contact: {lead.name}",
            description='Reach out to the new lead.',
            priority='high',
            due_at=now + timedelta(minutes=minutes),
        ),
    ]
