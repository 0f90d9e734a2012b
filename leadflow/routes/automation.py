"""
Automation blueprint — one POST endpoint per engine, invoked by the external scheduler.

Every endpoint accepts the same JSON body
    {action?, team_id?, pipeline_id?, lead_id?, rule_id?, cadence_id?,
     limit?, startPage?, maxPages?, dryRun?}
and answers {success: true, processed, succeeded, failed, errors, ..., timestamp}.
Errors are rendered by the handlers in leadflow.errors.
"""
from flask import Blueprint, jsonify, request

from leadflow.engine.base import utcnow
from leadflow.engine.orchestrator import ENGINE_ORDER, run_master
from leadflow.engine.runner import (
    execute_run, run_cadences, run_distribution, run_escalation, run_rules,
    run_sla_checks, run_task_sla, run_temperature,
)
from leadflow.errors import ValidationError

bp = Blueprint('automation', __name__, url_prefix='/api/automation')

# request key → runner kwarg
_INT_FIELDS = {
    'team_id': 'team_id',
    'pipeline_id': 'pipeline_id',
    'lead_id': 'lead_id',
    'rule_id': 'rule_id',
    'cadence_id': 'cadence_id',
    'limit': 'limit',
    'startPage': 'start_page',
    'maxPages': 'max_pages',
}


def parse_options(data):
    """Validate the shared request body. Returns (kwargs, dry_run, action)."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    opts = {}
    for key, kwarg in _INT_FIELDS.items():
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, bool):
            raise ValidationError(f"'{key}' must be an integer")
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"'{key}' must be an integer")
        if value < 0 or (key in ('limit', 'maxPages') and value < 1):
            raise ValidationError(f"'{key}' out of range")
        opts[kwarg] = value

    dry_run = data.get('dryRun', False)
    if not isinstance(dry_run, bool):
        raise ValidationError("'dryRun' must be true or false")

    action = data.get('action')
    if action is not None and not isinstance(action, str):
        raise ValidationError("'action' must be a string")

    return opts, dry_run, action


def _run(runner, allowed):
    opts, dry_run, _ = parse_options(request.get_json(silent=True))
    kwargs = {k: v for k, v in opts.items() if k in allowed}
    result = execute_run(runner, dry_run=dry_run, **kwargs)
    return jsonify({'success': True, **result, 'timestamp': utcnow().isoformat()})


@bp.route('/rules/run', methods=['POST'])
def rules_run():
    """Evaluate triggers and execute rule actions."""
    return _run(run_rules, {'rule_id', 'pipeline_id', 'lead_id', 'limit'})


@bp.route('/sla/check', methods=['POST'])
def sla_check():
    """SLA tiers + stale-lead alerts."""
    return _run(run_sla_checks, {'pipeline_id', 'lead_id', 'limit', 'start_page', 'max_pages'})


@bp.route('/distribute', methods=['POST'])
def distribute_leads():
    return _run(run_distribution, {'team_id', 'pipeline_id', 'limit'})


@bp.route('/temperature', methods=['POST'])
def temperature():
    return _run(run_temperature, {'pipeline_id', 'lead_id', 'limit', 'start_page', 'max_pages'})


@bp.route('/cadences/run', methods=['POST'])
def cadences_run():
    return _run(run_cadences, {'cadence_id', 'lead_id', 'limit'})


@bp.route('/escalation', methods=['POST'])
def escalation():
    return _run(run_escalation, {'team_id', 'limit'})


@bp.route('/tasks/check', methods=['POST'])
def tasks_check():
    return _run(run_task_sla, {'limit'})


@bp.route('/master', methods=['POST'])
def master():
    """Run all engines in priority order; `action` narrows it to one engine."""
    _, dry_run, action = parse_options(request.get_json(silent=True))
    engines = None
    if action:
        known = [name for name, _ in ENGINE_ORDER]
        if action not in known:
            raise ValidationError(f"Unknown action '{action}'. Expected one of: {', '.join(known)}")
        engines = [action]

    result = run_master(dry_run=dry_run, engines=engines)
    return jsonify({'success': result['status'] != 'error', **result, 'timestamp': utcnow().isoformat()})
