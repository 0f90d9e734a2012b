"""
Action Executor — runs a rule's ordered action list against one lead.

Actions are a closed set of frozen dataclasses keyed by their `type` field.
Each action runs independently: a failing action is recorded on its outcome
and the remaining actions still run. Actions operate on a working copy of
the lead, so a create_task after a move_stage sees the new stage.

The executor never writes to the store. It returns an ExecutionResult whose
`effects` the store adapter applies, ending with exactly one ledger entry.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from leadflow.config import TEMPERATURES
from leadflow.engine.base import (
    CreateNotification, CreateTask, LeadSnapshot, RecordExecution, StageInfo,
    UpdateLead, WriteHistory,
)
from leadflow.engine.engine_config import get_setting
from leadflow.engine.templates import lead_variables, render_message
from leadflow.errors import PartialExecutionError, ValidationError

logger = logging.getLogger('engine.actions')


# ── Action variants ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MoveStage:
    stage_id: int
    type = 'move_stage'


@dataclass(frozen=True)
class CreateTaskAction:
    title: str
    description: str = ''
    priority: str = 'medium'
    due_in_hours: float = 24
    type = 'create_task'


@dataclass(frozen=True)
class SendNotification:
    title: str
    message: str = ''
    type = 'send_notification'


@dataclass(frozen=True)
class AddTag:
    tag: str
    type = 'add_tag'


@dataclass(frozen=True)
class UpdateTemperature:
    temperature: str
    type = 'update_temperature'


@dataclass(frozen=True)
class LogActivity:
    title: str
    description: str = ''
    type = 'log_activity'


@dataclass(frozen=True)
class InvalidAction:
    """Placeholder for an action that failed to parse; always fails when run."""
    type: str
    error: str


def _require(data: dict, key: str):
    value = data.get(key)
    if value is None or value == '':
        raise ValidationError(f"{data.get('type')}: missing '{key}'")
    return value


def parse_action(data: Dict[str, Any]):
    """Parse one JSON action into its typed variant. Raises ValidationError."""
    if not isinstance(data, dict):
        raise ValidationError("action must be an object")

    action_type = data.get('type')
    if action_type == 'move_stage':
        try:
            return MoveStage(stage_id=int(_require(data, 'stage_id')))
        except (TypeError, ValueError):
            raise ValidationError("move_stage: stage_id must be an integer")

    if action_type == 'create_task':
        try:
            due = float(data.get('due_in_hours') or get_setting('rules', 'default_task_due_hours'))
        except (TypeError, ValueError):
            raise ValidationError("create_task: due_in_hours must be a number")
        return CreateTaskAction(
            title=_require(data, 'title'),
            description=data.get('description') or '',
            priority=data.get('priority') or 'medium',
            due_in_hours=due,
        )

    if action_type == 'send_notification':
        return SendNotification(title=_require(data, 'title'), message=data.get('message') or '')

    if action_type == 'add_tag':
        return AddTag(tag=str(_require(data, 'tag')).strip())

    if action_type == 'update_temperature':
        temperature = data.get('temperature')
        if temperature not in TEMPERATURES:
            raise ValidationError(f"update_temperature: invalid temperature {temperature!r}")
        return UpdateTemperature(temperature=temperature)

    if action_type == 'log_activity':
        return LogActivity(title=_require(data, 'title'), description=data.get('description') or '')

    raise ValidationError(f"unknown action type: {action_type!r}")


def parse_actions(raw: Optional[List[Dict[str, Any]]]) -> List:
    """Parse a rule's action list. Bad entries become InvalidAction, not a crash."""
    actions = []
    for item in raw or []:
        try:
            actions.append(parse_action(item))
        except ValidationError as e:
            action_type = item.get('type', '?') if isinstance(item, dict) else '?'
            actions.append(InvalidAction(type=str(action_type), error=e.message))
    return actions


# ── Results ───────────────────────────────────────────────────────────────────

@dataclass
class ActionOutcome:
    type: str
    status: str  # ok / skipped / failed
    detail: str = ''

    def to_dict(self):
        return {'type': self.type, 'status': self.status, 'detail': self.detail}


@dataclass
class ExecutionResult:
    rule_id: int
    lead_id: int
    outcomes: List[ActionOutcome] = field(default_factory=list)
    effects: List = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == 'failed')

    @property
    def status(self) -> str:
        failed = self.failed_count
        if failed == 0:
            return 'completed'
        if failed == len(self.outcomes):
            return 'failed'
        return 'partial'

    @property
    def errors(self) -> List[str]:
        return [f"{o.type}: {o.detail}" for o in self.outcomes if o.status == 'failed']

    def to_dict(self):
        return {
            'rule_id': self.rule_id,
            'lead_id': self.lead_id,
            'status': self.status,
            'actions': [o.to_dict() for o in self.outcomes],
        }


# ── Executor ──────────────────────────────────────────────────────────────────

class ActionExecutor:
    """Executes parsed actions; `stages` resolves move_stage targets and stage names."""

    def __init__(self, stages: Optional[Dict[int, StageInfo]] = None):
        self.stages = stages or {}

    def execute(self, rule, lead: LeadSnapshot, now: datetime) -> ExecutionResult:
        result = ExecutionResult(rule_id=rule.id, lead_id=lead.id)
        state = replace(lead, tags=list(lead.tags or []))

        for action in rule.actions:
            effects = []
            try:
                detail = self._run(action, rule, state, now, effects)
                status = 'skipped' if detail.startswith('skipped') else 'ok'
                result.outcomes.append(ActionOutcome(action.type, status, detail))
                result.effects.extend(effects)
            except PartialExecutionError as e:
                logger.warning("Rule %s lead %s: %s failed: %s", rule.id, lead.id, action.type, e.message)
                result.outcomes.append(ActionOutcome(action.type, 'failed', e.message))
            except Exception as e:
                logger.error("Rule %s lead %s: %s raised %s", rule.id, lead.id, action.type, e, exc_info=True)
                result.outcomes.append(ActionOutcome(action.type, 'failed', str(e)))

        result.effects.append(RecordExecution(
            source_type='rule',
            source_id=rule.id,
            lead_id=lead.id,
            status=result.status,
            executed_at=now,
            result={'actions': [o.to_dict() for o in result.outcomes]},
        ))
        return result

    def _run(self, action, rule, state: LeadSnapshot, now: datetime, effects: list) -> str:
        if isinstance(action, InvalidAction):
            raise PartialExecutionError(action.error, action.type)
        handler = getattr(self, f'_do_{action.type}')
        return handler(action, rule, state, now, effects)

    def _stage_name(self, stage_id) -> str:
        stage = self.stages.get(stage_id)
        return stage.name if stage else ''

    # ── Handlers ──
    # Each handler mutates `state` only after its checks pass and returns a
    # short detail string for the outcome.

    def _do_move_stage(self, action: MoveStage, rule, state, now, effects):
        target = self.stages.get(action.stage_id)
        if target is None or target.pipeline_id != state.pipeline_id:
            raise PartialExecutionError(
                f"stage {action.stage_id} is not part of pipeline {state.pipeline_id}", action.type,
            )
        if state.stage_id == target.id:
            return 'skipped: already in stage'

        from_stage = state.stage_id
        effects.append(UpdateLead(state.id, {'stage_id': target.id, 'stage_entered_at': now}))
        effects.append(WriteHistory(
            lead_id=state.id,
            action='stage_change',
            title=f"Moved to {target.name} by rule '{rule.name}'",
            created_at=now,
            details={'rule_id': rule.id},
            from_stage_id=from_stage,
            to_stage_id=target.id,
        ))
        state.stage_id = target.id
        state.stage_entered_at = now
        return f"moved {from_stage} -> {target.id}"

    def _do_create_task(self, action: CreateTaskAction, rule, state, now, effects):
        if state.assigned_to is None:
            return 'skipped: lead unassigned'
        effects.append(CreateTask(
            lead_id=state.id,
            assigned_to=state.assigned_to,
            title=render_message(action.title, self._variables(rule, state)),
            description=render_message(action.description, self._variables(rule, state)),
            priority=action.priority,
            due_at=now + timedelta(hours=action.due_in_hours),
        ))
        return 'task created'

    def _do_send_notification(self, action: SendNotification, rule, state, now, effects):
        if state.assigned_to is None:
            return 'skipped: lead unassigned'
        variables = self._variables(rule, state)
        effects.append(CreateNotification(
            agent_id=state.assigned_to,
            lead_id=state.id,
            type='automation',
            title=render_message(action.title, variables),
            message=render_message(action.message, variables),
            created_at=now,
            extra={'rule_id': rule.id},
        ))
        return 'notification queued'

    def _do_add_tag(self, action: AddTag, rule, state, now, effects):
        if not action.tag:
            raise PartialExecutionError("empty tag", action.type)
        if action.tag in state.tags:
            return 'skipped: tag present'
        state.tags = state.tags + [action.tag]
        effects.append(UpdateLead(state.id, {'tags': list(state.tags)}))
        return f"tagged {action.tag}"

    def _do_update_temperature(self, action: UpdateTemperature, rule, state, now, effects):
        if state.temperature == action.temperature:
            return 'skipped: unchanged'
        previous = state.temperature
        effects.append(UpdateLead(state.id, {'temperature': action.temperature}))
        effects.append(WriteHistory(
            lead_id=state.id,
            action='temperature_change',
            title=f"Temperature {previous} -> {action.temperature} by rule '{rule.name}'",
            created_at=now,
            details={'rule_id': rule.id, 'from': previous, 'to': action.temperature},
        ))
        state.temperature = action.temperature
        return f"temperature {previous} -> {action.temperature}"

    def _do_log_activity(self, action: LogActivity, rule, state, now, effects):
        variables = self._variables(rule, state)
        effects.append(WriteHistory(
            lead_id=state.id,
            action='automation',
            title=render_message(action.title, variables),
            created_at=now,
            details={'rule_id': rule.id, 'description': render_message(action.description, variables)},
        ))
        return 'logged'

    def _variables(self, rule, state: LeadSnapshot) -> Dict[str, str]:
        return lead_variables(state, {
            'rule_name': rule.name,
            'stage_name': self._stage_name(state.stage_id),
        })


def execute(rule, lead: LeadSnapshot, now: datetime, stages: Optional[Dict[int, StageInfo]] = None) -> ExecutionResult:
    """Convenience wrapper around ActionExecutor for a single invocation."""
    return ActionExecutor(stages).execute(rule, lead, now)
