"""
Monitor routes — collaborator health and execution-ledger inspection.
"""
from flask import Blueprint, jsonify, request
from sqlalchemy import select

from leadflow.database import get_session
from leadflow.errors import NotFoundError, ValidationError
from leadflow.models.automation_run import AutomationRun
from leadflow.models.execution import ExecutionRecord
from leadflow.services.circuit_breaker import get_all_breakers

bp = Blueprint('monitor', __name__)


@bp.route('/health')
def health():
    return jsonify({'status': 'ok'})


# ── Collaborator health ──────────────────────────────────────────────────────

@bp.route('/api/health')
def api_health():
    """Circuit breaker state for every outbound collaborator."""
    services = {name: breaker.get_health() for name, breaker in get_all_breakers().items()}
    degraded = [name for name, h in services.items() if h['state'] != 'closed']
    return jsonify({'status': 'degraded' if degraded else 'ok', 'services': services})


@bp.route('/api/health/<service>/reset', methods=['POST'])
def reset_circuit(service):
    breaker = get_all_breakers().get(service)
    if breaker is None:
        raise NotFoundError(f"Unknown service '{service}'")
    breaker.reset()
    return jsonify({'ok': True, 'service': service, 'state': breaker.state})


# ── Ledger inspection ────────────────────────────────────────────────────────

def _serialize_execution(row):
    return {
        'id': row.id,
        'source_type': row.source_type,
        'source_id': row.source_id,
        'step_index': row.step_index,
        'lead_id': row.lead_id,
        'status': row.status,
        'result': row.result,
        'executed_at': row.executed_at.isoformat() if row.executed_at else None,
    }


@bp.route('/api/executions')
def list_executions():
    """Recent ledger rows, newest first. Filters: source_type, source_id, lead_id, status."""
    source_type = request.args.get('source_type')
    if source_type and source_type not in ('rule', 'cadence'):
        raise ValidationError("source_type must be 'rule' or 'cadence'")
    limit = max(1, min(request.args.get('limit', 50, type=int), 500))

    stmt = select(ExecutionRecord)
    if source_type:
        stmt = stmt.where(ExecutionRecord.source_type == source_type)
    source_id = request.args.get('source_id', type=int)
    if source_id is not None:
        stmt = stmt.where(ExecutionRecord.source_id == source_id)
    lead_id = request.args.get('lead_id', type=int)
    if lead_id is not None:
        stmt = stmt.where(ExecutionRecord.lead_id == lead_id)
    status = request.args.get('status')
    if status:
        stmt = stmt.where(ExecutionRecord.status == status)

    session = get_session()
    try:
        rows = session.execute(
            stmt.order_by(ExecutionRecord.executed_at.desc(), ExecutionRecord.id.desc()).limit(limit)
        ).scalars().all()
        return jsonify({'success': True, 'count': len(rows), 'executions': [_serialize_execution(r) for r in rows]})
    finally:
        session.close()


@bp.route('/api/automation/runs')
def list_automation_runs():
    """Recent orchestrator runs."""
    limit = max(1, min(request.args.get('limit', 20, type=int), 200))
    session = get_session()
    try:
        rows = session.execute(
            select(AutomationRun).order_by(AutomationRun.id.desc()).limit(limit)
        ).scalars().all()
        return jsonify({'success': True, 'runs': [{
            'id': r.id,
            'kind': r.kind,
            'status': r.status,
            'results': r.results,
            'errors': r.errors,
            'skipped': r.skipped,
            'duration_seconds': r.duration_seconds,
            'started_at': r.started_at.isoformat() if r.started_at else None,
        } for r in rows]})
    finally:
        session.close()
