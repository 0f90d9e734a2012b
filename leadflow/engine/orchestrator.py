"""
Master orchestrator — runs every engine in priority order within a time budget.

Critical engines (SLA, rules) go first, then outreach and scoring, then
housekeeping. Each engine gets its own session, so one failing engine never
rolls back another. Engines that would start after the budget is spent are
skipped and reported; the next scheduler tick picks them up.
"""
import logging
import time

from leadflow.database import get_session
from leadflow.engine.base import utcnow
from leadflow.engine.engine_config import get_setting
from leadflow.engine.runner import (
    execute_run, run_cadences, run_distribution, run_escalation, run_rules,
    run_sla_checks, run_task_sla, run_temperature,
)
from leadflow.models.automation_run import AutomationRun
from leadflow.services.notifications import notify_master_run

logger = logging.getLogger('engine.orchestrator')

ENGINE_ORDER = [
    ('sla', run_sla_checks),
    ('rules', run_rules),
    ('cadences', run_cadences),
    ('temperature', run_temperature),
    ('distribution', run_distribution),
    ('escalation', run_escalation),
    ('tasks', run_task_sla),
]


def _status(errors) -> str:
    if not errors:
        return 'success'
    if len(errors) < 3:
        return 'partial'
    return 'error'


def run_master(now=None, budget_seconds=None, dry_run=False, engines=None):
    """Run the selected engines (all by default) and log one AutomationRun row."""
    now = now or utcnow()
    budget = float(budget_seconds if budget_seconds is not None else get_setting('master', 'budget_seconds'))
    selected = [(name, fn) for name, fn in ENGINE_ORDER if engines is None or name in engines]

    started = time.monotonic()
    results, errors, skipped = {}, [], []

    for name, runner in selected:
        elapsed = time.monotonic() - started
        if elapsed >= budget:
            logger.warning("Time budget spent after %.1fs, skipping %s", elapsed, name, extra={'engine': name})
            skipped.append(name)
            continue
        try:
            summary = execute_run(runner, now=now, dry_run=dry_run)
            results[name] = {k: summary.get(k) for k in ('processed', 'succeeded', 'failed', 'skipped')}
            if summary.get('errors'):
                results[name]['errors'] = summary['errors'][:10]
        except Exception as e:
            logger.error("Engine %s failed: %s", name, e, exc_info=True, extra={'engine': name})
            errors.append({'engine': name, 'error': str(e)})

    duration = time.monotonic() - started
    status = _status(errors)

    run = AutomationRun(
        kind='master',
        status=status,
        results=results,
        errors=errors or None,
        skipped=skipped or None,
        duration_seconds=round(duration, 3),
        started_at=now,
        completed_at=utcnow(),
    )
    session = get_session()
    try:
        session.add(run)
        session.commit()
        run_id = run.id
    except Exception:
        session.rollback()
        logger.error("Failed to record automation run", exc_info=True)
        run_id = None
    finally:
        session.close()

    notify_master_run(run)
    logger.info("Master run %s finished in %.1fs (%d engines, %d errors, %d skipped)",
                status, duration, len(results), len(errors), len(skipped))

    return {
        'status': status,
        'run_id': run_id,
        'results': results,
        'errors': errors,
        'skipped': skipped,
        'duration_seconds': round(duration, 3),
    }
