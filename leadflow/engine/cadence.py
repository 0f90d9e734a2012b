"""
Cadence Scheduler — fires multi-step outreach relative to stage entry.

A step fires for a lead when the whole number of days since the lead entered
its current stage equals the step's day_offset, and the ledger has no row
for (cadence, step, lead) since that stage entry. Re-running the same day is
a no-op; a lead that leaves and re-enters the stage starts the cadence over.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from leadflow.engine.base import EnqueueMessage, LeadSnapshot, Ledger, RecordExecution, as_utc
from leadflow.engine.templates import lead_variables, render_message

logger = logging.getLogger('engine.cadence')


@dataclass(frozen=True)
class StepSpec:
    index: int
    day_offset: int
    message_template: str
    channel: Optional[str] = None


@dataclass(frozen=True)
class CadenceSpec:
    id: int
    name: str
    channel: str
    steps: List[StepSpec] = field(default_factory=list)
    pipeline_id: Optional[int] = None
    stage_id: Optional[int] = None

    @classmethod
    def from_model(cls, cadence, steps) -> 'CadenceSpec':
        ordered = sorted(steps, key=lambda s: (s.position, s.id))
        return cls(
            id=cadence.id,
            name=cadence.name,
            channel=cadence.channel,
            pipeline_id=cadence.pipeline_id,
            stage_id=cadence.stage_id,
            steps=[
                StepSpec(index=s.position, day_offset=s.day_offset,
                         message_template=s.message_template or '', channel=s.channel)
                for s in ordered
            ],
        )

    def in_scope(self, lead: LeadSnapshot) -> bool:
        if self.pipeline_id is not None and lead.pipeline_id != self.pipeline_id:
            return False
        if self.stage_id is not None and lead.stage_id != self.stage_id:
            return False
        return True


@dataclass
class CadenceFire:
    lead: LeadSnapshot
    step: StepSpec
    content: str
    effects: List = field(default_factory=list)

    def to_dict(self):
        return {
            'lead_id': self.lead.id,
            'step_index': self.step.index,
            'day_offset': self.step.day_offset,
            'content': self.content,
        }


def days_in_stage(lead: LeadSnapshot, now: datetime) -> Optional[int]:
    start = lead.stage_clock_start
    if start is None:
        return None
    return math.floor((as_utc(now) - start).total_seconds() / 86400)


def tick(cadence: CadenceSpec, leads: List[LeadSnapshot], now: datetime, ledger: Ledger) -> List[CadenceFire]:
    """Return the step firings due now; each carries its dispatch + ledger effects."""
    due = {}
    for lead in leads:
        if lead.is_terminal or not cadence.in_scope(lead):
            continue
        days = days_in_stage(lead, now)
        if days is None:
            continue
        for step in cadence.steps:
            if step.day_offset == days:
                due.setdefault(step, []).append(lead)

    fires = []
    for step, step_leads in due.items():
        last = ledger.latest_executions('cadence', cadence.id, [l.id for l in step_leads], step_index=step.index)
        for lead in step_leads:
            fired_at = last.get(lead.id)
            if fired_at is not None and as_utc(fired_at) >= lead.stage_clock_start:
                continue
            fires.append(_fire(cadence, step, lead, now))

    logger.debug("Cadence %s: %d step(s) due", cadence.id, len(fires))
    return fires


def _fire(cadence: CadenceSpec, step: StepSpec, lead: LeadSnapshot, now: datetime) -> CadenceFire:
    content = render_message(step.message_template, lead_variables(lead))
    channel = step.channel or cadence.channel
    fire = CadenceFire(lead=lead, step=step, content=content)
    fire.effects.append(EnqueueMessage(
        lead_id=lead.id,
        phone=lead.phone or '',
        channel=channel,
        content=content,
        scheduled_for=now,
        cadence_id=cadence.id,
        step_index=step.index,
    ))
    fire.effects.append(RecordExecution(
        source_type='cadence',
        source_id=cadence.id,
        lead_id=lead.id,
        status='completed',
        executed_at=now,
        step_index=step.index,
        result={'day_offset': step.day_offset, 'channel': channel},
    ))
    return fire
