"""
Batch runners — one bounded invocation of each engine component.

Each run_* function:
  1. loads a bounded batch of candidates through leadflow.services.store
  2. hands plain snapshots to the engine core
  3. applies the returned effects lead by lead, each inside a SAVEPOINT

and returns an EngineResult dict. None of them commit; execute_run() owns
the session lifecycle (commit, or rollback for dry runs and failures).

Store-wide failures while loading surface as UpstreamError. Failures while
applying one lead's effects are recorded in `errors` and the run carries on.
"""
import logging
from collections import Counter
from datetime import timedelta

from sqlalchemy import func, or_, select

from leadflow.config import DEFAULT_BATCH_LIMIT, DISTRIBUTION_BATCH_LIMIT, ESCALATION_PIPELINE_KINDS, MAX_BATCH_LIMIT
from leadflow.database import get_session
from leadflow.engine.actions import ActionExecutor
from leadflow.engine.base import EngineResult, utcnow
from leadflow.engine.cadence import CadenceSpec, tick
from leadflow.engine.distribution import assignment_effects, distribute
from leadflow.engine.engine_config import get_setting
from leadflow.engine.escalation import escalation_effects, group_by_team, is_due, pick_target
from leadflow.engine.sla import ALERT_TYPES, STALE_TYPE, SLAPolicy, check_lead, check_stale, select_policy
from leadflow.engine.task_sla import TaskSnapshot, is_overdue, needs_reminder, overdue_effects, reminder_effects
from leadflow.engine.temperature import classify, temperature_effects
from leadflow.engine.triggers import RuleSpec, evaluate
from leadflow.errors import NotFoundError, ValidationError
from leadflow.models.automation_rule import AutomationRule
from leadflow.models.cadence import Cadence, CadenceStep
from leadflow.models.lead import Lead
from leadflow.models.pipeline import Pipeline
from leadflow.models.sla_config import SLAConfig
from leadflow.models.task import Task
from leadflow.models.team import Agent
from leadflow.services.notifications import notify_critical_sla
from leadflow.services.store import (
    LeadPager, SqlLedger, active_leads, agent_loads, apply_isolated, coordinator_ids,
    distribution_agents, due_cadence_steps, escalation_agents, latest_history, load_leads, load_stages,
    recent_interactions, recent_notifications, skip_recently_executed, snapshot_agent, stage_clock,
    store_errors, trigger_candidates,
)

logger = logging.getLogger('engine.runner')


def bounded_limit(limit, default=DEFAULT_BATCH_LIMIT) -> int:
    """Clamp a requested batch size to 1..MAX_BATCH_LIMIT."""
    if limit is None:
        return default
    return max(1, min(int(limit), MAX_BATCH_LIMIT))


def _apply(result: EngineResult, session, effects, label: str, dry_run: bool) -> bool:
    """Apply one lead's effects; record the failure on `result` instead of raising."""
    if dry_run:
        return True
    try:
        apply_isolated(session, effects, label=label)
        return True
    except Exception as e:
        logger.error("Failed to apply effects for %s: %s", label, e, exc_info=True)
        result.record_error(f"{label}: {e}")
        return False


# ── Rules ─────────────────────────────────────────────────────────────────────

def run_rules(session, now, rule_id=None, pipeline_id=None, lead_id=None, limit=None, dry_run=False):
    """Evaluate active rules and execute their actions on qualifying leads."""
    limit = bounded_limit(limit)
    result = EngineResult()

    with store_errors('loading rules'):
        stmt = select(AutomationRule).where(AutomationRule.is_active.is_(True))
        if rule_id is not None:
            stmt = stmt.where(AutomationRule.id == rule_id)
        rules = session.execute(stmt.order_by(AutomationRule.id)).scalars().all()
        if rule_id is not None and not rules:
            raise NotFoundError(f"Rule {rule_id} not found or inactive")
        stages = load_stages(session)

    ledger = SqlLedger(session)
    executor = ActionExecutor(stages)
    evaluated = 0

    for rule in rules:
        try:
            spec = RuleSpec.from_model(rule)
        except ValidationError as e:
            logger.warning("Rule %s has invalid configuration: %s", rule.id, e.message, extra={'rule_id': rule.id})
            result.record_error(f"rule {rule.id}: {e.message}")
            continue

        if pipeline_id is not None and spec.pipeline_id not in (None, pipeline_id):
            continue
        scope_pipeline = spec.pipeline_id if spec.pipeline_id is not None else pipeline_id

        with store_errors(f'loading candidates for rule {spec.id}'):
            stmt = trigger_candidates(active_leads(scope_pipeline, spec.stage_id, lead_id=lead_id), spec.trigger, now)
            stmt = skip_recently_executed(stmt, 'rule', spec.id, now - spec.dedupe_window)
            candidates = load_leads(session, stmt, limit)
            qualifying = evaluate(spec, candidates, now, ledger)
        evaluated += len(candidates)

        fired = 0
        for lead in qualifying:
            result.processed += 1
            execution = executor.execute(spec, lead, now)
            label = f"rule {spec.id} lead {lead.id}"
            if not _apply(result, session, execution.effects, label, dry_run):
                continue
            fired += 1
            result.details.append(execution.to_dict())
            if execution.status == 'completed':
                result.succeeded += 1
            else:
                result.failed += 1
                result.errors.extend(f"{label}: {err}" for err in execution.errors)

        if fired and not dry_run:
            rule.run_count = (rule.run_count or 0) + 1
            rule.last_run_at = now
        logger.info("Rule %s (%s): %d candidates, %d executed", spec.id, spec.trigger.type,
                    len(candidates), fired, extra={'engine': 'rules', 'rule_id': spec.id})

    result.meta.update(rules=len(rules), evaluated=evaluated)
    return result.to_dict()


# ── SLA ───────────────────────────────────────────────────────────────────────

def run_sla_checks(session, now, pipeline_id=None, lead_id=None, limit=None,
                   start_page=0, max_pages=1, dry_run=False):
    """Classify SLA tiers, raise deduped alerts, and flag stale leads."""
    limit = bounded_limit(limit)
    result = EngineResult()

    with store_errors('loading SLA configs'):
        policies = [
            SLAPolicy.from_model(row) for row in session.execute(
                select(SLAConfig).where(SLAConfig.is_active.is_(True)).order_by(SLAConfig.id)
            ).scalars().all()
        ]
        stages = load_stages(session)
        coordinators = coordinator_ids(session)

    lookback = max(float(get_setting('sla', 'alert_dedupe_hours')), float(get_setting('sla', 'stale_dedupe_hours')))
    alert_types = list(ALERT_TYPES.values()) + [STALE_TYPE]
    tiers = Counter()
    critical = []

    pager = LeadPager(session, active_leads(pipeline_id, lead_id=lead_id), limit, start_page, max_pages)
    for _, leads in pager:
        with store_errors('reading recent alerts'):
            last_sent = recent_notifications(session, [l.id for l in leads], alert_types, now - timedelta(hours=lookback))

        for lead in leads:
            result.processed += 1
            sent = last_sent.get(lead.id, {})
            alerts = []

            policy = select_policy(lead, policies)
            if policy is not None:
                stage = stages.get(lead.stage_id)
                alert = check_lead(lead, policy, now, sent, coordinators, stage.name if stage else '')
                if alert is not None:
                    alerts.append(alert)
            stale = check_stale(lead, now, sent)
            if stale is not None:
                alerts.append(stale)

            if not alerts:
                result.succeeded += 1
                continue

            effects = [e for a in alerts for e in a.effects]
            if not _apply(result, session, effects, f"sla lead {lead.id}", dry_run):
                continue
            result.succeeded += 1
            for alert in alerts:
                tiers[alert.tier] += 1
                result.details.append(alert.to_dict())
                if alert.tier == 'critical':
                    critical.append(alert)

    if critical and not dry_run:
        notify_critical_sla(critical)

    result.meta.update(
        alerts={t: tiers.get(t, 0) for t in ('warning', 'breach', 'critical', 'stale')},
        next_page=pager.next_page,
    )
    return result.to_dict()


# ── Distribution ──────────────────────────────────────────────────────────────

def run_distribution(session, now, team_id=None, pipeline_id=None, limit=None, dry_run=False):
    """Assign unassigned leads round-robin to the least-loaded agents of their team."""
    limit = bounded_limit(limit, DISTRIBUTION_BATCH_LIMIT)
    result = EngineResult()

    with store_errors('loading unassigned leads'):
        agents_by_team = distribution_agents(session, team_id)
        loads = agent_loads(session, [a.id for agents in agents_by_team.values() for a in agents])
        unassigned = active_leads(pipeline_id, team_id=team_id, unassigned=True)
        # leads no staffed team can take are counted, never loaded
        staffed = Lead.team_id.in_(list(agents_by_team))
        leads = load_leads(session, unassigned.where(staffed), limit)
        unroutable = session.execute(
            select(func.count()).select_from(
                unassigned.where(or_(Lead.team_id.is_(None), ~staffed)).order_by(None).subquery()
            )
        ).scalar_one()

    assignments, skipped = distribute(leads, agents_by_team, loads)
    result.processed = len(leads)
    result.skipped = len(skipped)

    final_loads = dict(loads)
    for assignment in assignments:
        label = f"assignment lead {assignment.lead.id}"
        if not _apply(result, session, assignment_effects(assignment, now), label, dry_run):
            continue
        result.succeeded += 1
        final_loads[assignment.agent.id] = final_loads.get(assignment.agent.id, 0) + 1
        result.details.append(assignment.to_dict())

    logger.info("Distribution: %d assigned, %d skipped", result.succeeded, result.skipped,
                extra={'engine': 'distribution'})
    if unroutable:
        logger.warning("Distribution: %d unassigned lead(s) have no team with eligible agents", unroutable,
                       extra={'engine': 'distribution'})
    result.meta.update(skipped_leads=skipped, unroutable=unroutable,
                       loads={str(k): v for k, v in final_loads.items()})
    return result.to_dict()


# ── Temperature ───────────────────────────────────────────────────────────────

def run_temperature(session, now, pipeline_id=None, lead_id=None, limit=None,
                    start_page=0, max_pages=1, dry_run=False):
    """Reclassify lead temperature from recent interactions and stage."""
    limit = bounded_limit(limit)
    result = EngineResult()

    with store_errors('loading stages'):
        stages = load_stages(session)
    window_days = max(int(get_setting('temperature', 'interaction_window_days')),
                      int(get_setting('temperature', 'sentiment_window_days')))
    totals = Counter()
    changed = 0

    pager = LeadPager(session, active_leads(pipeline_id, lead_id=lead_id), limit, start_page, max_pages)
    for _, leads in pager:
        with store_errors('loading interactions'):
            interactions = recent_interactions(session, [l.id for l in leads], now - timedelta(days=window_days))

        for lead in leads:
            result.processed += 1
            stage = stages.get(lead.stage_id)
            decision = classify(lead, interactions.get(lead.id, []), now, stage.category if stage else None)
            totals[decision.temperature] += 1

            effects = temperature_effects(lead, decision, now)
            if effects:
                if not _apply(result, session, effects, f"temperature lead {lead.id}", dry_run):
                    continue
                changed += 1
                result.details.append({
                    'lead_id': lead.id,
                    'from': decision.signals.previous,
                    'to': decision.temperature,
                    'reason': decision.reason,
                })
            result.succeeded += 1

    result.meta.update(changed=changed, temperatures=dict(totals), next_page=pager.next_page)
    return result.to_dict()


# ── Cadences ──────────────────────────────────────────────────────────────────

def run_cadences(session, now, cadence_id=None, lead_id=None, limit=None, dry_run=False):
    """Fire due cadence steps and enqueue their messages."""
    limit = bounded_limit(limit)
    result = EngineResult()

    with store_errors('loading cadences'):
        stmt = select(Cadence).where(Cadence.is_active.is_(True))
        if cadence_id is not None:
            stmt = stmt.where(Cadence.id == cadence_id)
        cadences = session.execute(stmt.order_by(Cadence.id)).scalars().all()
        if cadence_id is not None and not cadences:
            raise NotFoundError(f"Cadence {cadence_id} not found or inactive")

    ledger = SqlLedger(session)
    enqueued = 0

    for cadence in cadences:
        with store_errors(f'loading cadence {cadence.id}'):
            steps = session.execute(
                select(CadenceStep).where(CadenceStep.cadence_id == cadence.id)
            ).scalars().all()
            spec = CadenceSpec.from_model(cadence, steps)
            stmt = due_cadence_steps(
                active_leads(spec.pipeline_id, spec.stage_id, lead_id=lead_id),
                spec.id, [(s.index, s.day_offset) for s in spec.steps], now,
            )
            leads = load_leads(session, stmt, limit)
            fires = tick(spec, leads, now, ledger)

        for fire in fires:
            result.processed += 1
            label = f"cadence {spec.id} step {fire.step.index} lead {fire.lead.id}"
            if not _apply(result, session, fire.effects, label, dry_run):
                continue
            result.succeeded += 1
            enqueued += 1
            result.details.append(dict(fire.to_dict(), cadence_id=spec.id))

        if fires:
            logger.info("Cadence %s: %d step(s) fired", spec.id, len(fires),
                        extra={'engine': 'cadences', 'cadence_id': spec.id})

    result.meta.update(cadences=len(cadences), messages_enqueued=enqueued)
    return result.to_dict()


# ── Escalation ────────────────────────────────────────────────────────────────

def run_escalation(session, now, team_id=None, limit=None, dry_run=False):
    """Hand leads stuck in a sales stage to a senior owner."""
    limit = bounded_limit(limit)
    result = EngineResult()
    cutoff = now - timedelta(days=float(get_setting('escalation', 'after_days')))

    with store_errors('loading stuck leads'):
        stmt = (
            active_leads(team_id=team_id)
            .join(Pipeline, Pipeline.id == Lead.pipeline_id)
            .where(Pipeline.kind.in_(ESCALATION_PIPELINE_KINDS))
            .where(stage_clock() <= cutoff)
        )
        leads = load_leads(session, stmt, limit)
        agents = escalation_agents(session)
        last = latest_history(session, [l.id for l in leads], 'escalation',
                              now - timedelta(days=float(get_setting('escalation', 'dedupe_days'))))
        owner_ids = {l.assigned_to for l in leads if l.assigned_to is not None}
        owners = {
            a.id: snapshot_agent(a) for a in session.execute(
                select(Agent).where(Agent.id.in_(owner_ids))
            ).scalars().all()
        } if owner_ids else {}

    teams = group_by_team(agents)
    managers = [a for a in agents if a.role == 'manager']

    for lead in leads:
        result.processed += 1
        if not is_due(lead, now, last.get(lead.id)):
            result.skipped += 1
            continue
        target = pick_target(lead, teams.get(lead.team_id, []), managers)
        if target is None:
            result.skipped += 1
            result.details.append({'lead_id': lead.id, 'skipped': 'no escalation target'})
            continue

        effects = escalation_effects(lead, target, now, owners.get(lead.assigned_to))
        if not _apply(result, session, effects, f"escalation lead {lead.id}", dry_run):
            continue
        result.succeeded += 1
        result.details.append({'lead_id': lead.id, 'from_agent_id': lead.assigned_to, 'to_agent_id': target.id})

    result.meta.update(escalated=result.succeeded)
    return result.to_dict()


# ── Task SLA ──────────────────────────────────────────────────────────────────

def _task_snapshot(row: Task) -> TaskSnapshot:
    return TaskSnapshot(
        id=row.id, lead_id=row.lead_id, title=row.title, assigned_to=row.assigned_to,
        due_at=row.due_at, status=row.status, reminded_at=row.reminded_at,
        escalated=bool(row.escalated),
    )


def run_task_sla(session, now, limit=None, dry_run=False):
    """Mark overdue tasks and send one reminder for tasks due soon."""
    limit = bounded_limit(limit)
    result = EngineResult()
    horizon = now + timedelta(hours=float(get_setting('tasks', 'reminder_window_hours')))

    with store_errors('loading tasks'):
        rows = session.execute(
            select(Task)
            .join(Lead, Lead.id == Task.lead_id)
            .where(Lead.won_at.is_(None))
            .where(Lead.lost_at.is_(None))
            .where(Task.status == 'pending')
            .where(Task.due_at.is_not(None))
            .where(Task.due_at <= horizon)
            .order_by(Task.due_at, Task.id)
            .limit(limit)
        ).scalars().all()
        tasks = [_task_snapshot(r) for r in rows]

    overdue = reminders = 0
    for task in tasks:
        result.processed += 1
        if is_overdue(task, now):
            effects, kind = overdue_effects(task, now), 'overdue'
        elif needs_reminder(task, now):
            effects, kind = reminder_effects(task, now), 'reminder'
        else:
            result.skipped += 1
            continue

        if not _apply(result, session, effects, f"task {task.id}", dry_run):
            continue
        result.succeeded += 1
        if kind == 'overdue':
            overdue += 1
        else:
            reminders += 1
        result.details.append({'task_id': task.id, 'lead_id': task.lead_id, 'action': kind})

    result.meta.update(overdue=overdue, reminders=reminders)
    return result.to_dict()


# ── Session lifecycle ─────────────────────────────────────────────────────────

def execute_run(runner, now=None, dry_run=False, **kwargs):
    """
    Run one engine in its own session.

    Commits on success, rolls back on dry runs and on any exception (which is
    re-raised for the caller to translate).
    """
    now = now or utcnow()
    session = get_session()
    try:
        result = runner(session, now, dry_run=dry_run, **kwargs)
        if dry_run:
            session.rollback()
        else:
            session.commit()
        result['dry_run'] = dry_run
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
