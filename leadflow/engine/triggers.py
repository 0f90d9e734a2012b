"""
Trigger Evaluator — decides which leads a rule fires for right now.

A rule row is parsed once into a RuleSpec (typed trigger + typed actions),
then evaluate() filters a candidate batch:

  1. terminal leads are dropped unconditionally
  2. leads outside the rule's pipeline/stage scope are dropped
  3. the trigger condition must hold at `now`
  4. leads with a ledger row for (rule, lead) inside the dedupe window are dropped

Pure read: nothing here writes to the store.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import List, Optional

from leadflow.engine.actions import parse_actions
from leadflow.engine.base import LeadSnapshot, Ledger, as_utc, hours_between
from leadflow.engine.engine_config import get_setting
from leadflow.errors import ValidationError

logger = logging.getLogger('engine.triggers')


# ── Trigger variants ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StageEntryTrigger:
    stage_id: int
    type = 'stage_entry'

    def matches(self, lead: LeadSnapshot, now: datetime) -> bool:
        return lead.stage_id == self.stage_id


@dataclass(frozen=True)
class TimeInStageTrigger:
    max_days: float
    type = 'time_in_stage'

    def matches(self, lead: LeadSnapshot, now: datetime) -> bool:
        start = lead.stage_clock_start
        if start is None:
            return False
        return hours_between(start, now) >= self.max_days * 24


@dataclass(frozen=True)
class NoContactTrigger:
    hours: float
    type = 'no_contact'

    def matches(self, lead: LeadSnapshot, now: datetime) -> bool:
        if lead.last_contact_at is None:
            return True
        return hours_between(lead.last_contact_at, now) >= self.hours


@dataclass(frozen=True)
class TemperatureTrigger:
    temperature: str
    type = 'temperature_change'

    def matches(self, lead: LeadSnapshot, now: datetime) -> bool:
        return lead.temperature == self.temperature


@dataclass(frozen=True)
class ScheduledTrigger:
    at: time
    tolerance_minutes: int
    type = 'scheduled'

    def matches(self, lead: LeadSnapshot, now: datetime) -> bool:
        return minutes_apart(as_utc(now).time(), self.at) <= self.tolerance_minutes


def minutes_apart(a: time, b: time) -> int:
    """Distance between two times of day, wrapping at midnight."""
    a_min = a.hour * 60 + a.minute
    b_min = b.hour * 60 + b.minute
    diff = abs(a_min - b_min)
    return min(diff, 1440 - diff)


def _parse_time_of_day(value) -> time:
    if not value or not isinstance(value, str):
        raise ValidationError("scheduled trigger requires time_of_day as HH:MM")
    try:
        hour, minute = value.strip().split(':')[:2]
        return time(int(hour), int(minute))
    except ValueError:
        raise ValidationError(f"invalid time_of_day: {value!r}")


def _positive_number(config: dict, key: str, default):
    value = config.get(key, default)
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"trigger_config.{key} must be a number")
    if value < 0:
        raise ValidationError(f"trigger_config.{key} must be >= 0")
    return value


def parse_trigger(trigger_type: str, config: Optional[dict], stage_id=None, time_of_day=None):
    """Build the typed trigger for a rule row. Raises ValidationError on bad config."""
    config = config or {}

    if trigger_type == 'stage_entry':
        if stage_id is None:
            raise ValidationError("stage_entry rules need a stage scope")
        return StageEntryTrigger(stage_id=stage_id)

    if trigger_type == 'time_in_stage':
        return TimeInStageTrigger(
            max_days=_positive_number(config, 'max_days', get_setting('rules', 'default_max_days')),
        )

    if trigger_type == 'no_contact':
        return NoContactTrigger(
            hours=_positive_number(config, 'hours', get_setting('rules', 'default_no_contact_hours')),
        )

    if trigger_type == 'temperature_change':
        temperature = config.get('temperature')
        if temperature not in ('cold', 'warm', 'hot'):
            raise ValidationError("temperature_change trigger needs temperature cold/warm/hot")
        return TemperatureTrigger(temperature=temperature)

    if trigger_type == 'scheduled':
        return ScheduledTrigger(
            at=_parse_time_of_day(time_of_day or config.get('time_of_day')),
            tolerance_minutes=int(get_setting('rules', 'scheduled_tolerance_minutes')),
        )

    raise ValidationError(f"unknown trigger type: {trigger_type!r}")


# ── Rule spec ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RuleSpec:
    id: int
    name: str
    trigger: object
    actions: List = field(default_factory=list)
    pipeline_id: Optional[int] = None
    stage_id: Optional[int] = None
    dedupe_window: timedelta = timedelta(hours=24)

    @classmethod
    def from_model(cls, rule) -> 'RuleSpec':
        hours = rule.dedupe_window_hours
        if hours is None:
            hours = get_setting('rules', 'default_dedupe_hours')
        return cls(
            id=rule.id,
            name=rule.name,
            trigger=parse_trigger(rule.trigger_type, rule.trigger_config, rule.stage_id, rule.time_of_day),
            actions=parse_actions(rule.actions),
            pipeline_id=rule.pipeline_id,
            stage_id=rule.stage_id,
            dedupe_window=timedelta(hours=float(hours)),
        )

    def in_scope(self, lead: LeadSnapshot) -> bool:
        if self.pipeline_id is not None and lead.pipeline_id != self.pipeline_id:
            return False
        if self.stage_id is not None and lead.stage_id != self.stage_id:
            return False
        return True


# ── Evaluation ────────────────────────────────────────────────────────────────

def evaluate(rule: RuleSpec, candidates: List[LeadSnapshot], now: datetime, ledger: Ledger) -> List[LeadSnapshot]:
    """Return the candidates this rule should act on now, in candidate order."""
    matching = [
        lead for lead in candidates
        if not lead.is_terminal and rule.in_scope(lead) and rule.trigger.matches(lead, now)
    ]
    if not matching:
        return []

    cutoff = as_utc(now) - rule.dedupe_window
    recent = ledger.latest_executions('rule', rule.id, [lead.id for lead in matching])

    qualifying = []
    for lead in matching:
        last = recent.get(lead.id)
        if last is not None and as_utc(last) >= cutoff:
            continue
        qualifying.append(lead)

    if len(qualifying) < len(matching):
        logger.debug(
            "Rule %s: %d/%d matches suppressed by dedupe window",
            rule.id, len(matching) - len(qualifying), len(matching),
        )
    return qualifying
