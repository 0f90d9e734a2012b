"""Tests for leadflow.engine.runner — batch runners against an in-memory store."""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from leadflow.engine.base import as_utc
from leadflow.engine.runner import (
    bounded_limit, execute_run, run_cadences, run_distribution, run_escalation, run_rules,
    run_sla_checks, run_task_sla, run_temperature,
)
from leadflow.errors import NotFoundError, UpstreamError
from leadflow.models.automation_rule import AutomationRule
from leadflow.models.cadence import Cadence, CadenceStep
from leadflow.models.execution import ExecutionRecord
from leadflow.models.history import HistoryEntry
from leadflow.models.interaction import Interaction
from leadflow.models.lead import Lead
from leadflow.models.message import DispatchMessage
from leadflow.models.notification import Notification
from leadflow.models.pipeline import Pipeline, Stage
from leadflow.models.sla_config import SLAConfig
from leadflow.models.task import Task
from leadflow.models.team import Team
from leadflow.services import store


def _all(session, model, **filters):
    return session.execute(select(model).filter_by(**filters)).scalars().all()


@pytest.fixture
def make_rule(db_session):
    def _make(**overrides):
        defaults = dict(
            name='Stale follow-up',
            trigger_type='no_contact',
            trigger_config={'hours': 48},
            actions=[
                {'type': 'add_tag', 'tag': 'follow-up'},
                {'type': 'create_task', 'title': 'Call {{first_name}}'},
            ],
            dedupe_window_hours=24,
            is_active=True,
        )
        defaults.update(overrides)
        rule = AutomationRule(**defaults)
        db_session.add(rule)
        db_session.commit()
        return rule
    return _make


def test_bounded_limit():
    assert bounded_limit(None, 50) == 50
    assert bounded_limit(0) == 1
    assert bounded_limit(10_000) == 2000
    assert bounded_limit(25) == 25


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class TestRunRules:

    def test_executes_actions_and_records_ledger(self, db_session, world, make_lead, make_rule, now):
        rule = make_rule()
        lead = make_lead(assigned_to=world.sdr1.id, last_contact_at=now - timedelta(hours=72))

        result = run_rules(db_session, now)

        assert result['processed'] == 1
        assert result['succeeded'] == 1
        assert db_session.get(Lead, lead.id).tags == ['follow-up']
        tasks = _all(db_session, Task, lead_id=lead.id)
        assert [t.title for t in tasks] == ['Call Maria']
        records = _all(db_session, ExecutionRecord, source_type='rule', source_id=rule.id)
        assert [r.status for r in records] == ['completed']
        assert db_session.get(AutomationRule, rule.id).run_count == 1

    def test_second_run_inside_window_is_noop(self, db_session, world, make_lead, make_rule, now):
        make_rule()
        make_lead(assigned_to=world.sdr1.id, last_contact_at=now - timedelta(hours=72))

        run_rules(db_session, now)
        again = run_rules(db_session, now + timedelta(hours=1))

        assert again['processed'] == 0
        assert len(_all(db_session, ExecutionRecord)) == 1
        assert len(_all(db_session, Task)) == 1

    def test_reruns_after_window(self, db_session, world, make_lead, make_rule, now):
        make_rule()
        make_lead(assigned_to=world.sdr1.id, last_contact_at=now - timedelta(hours=72))

        run_rules(db_session, now)
        later = run_rules(db_session, now + timedelta(hours=25))

        assert later['processed'] == 1
        assert len(_all(db_session, ExecutionRecord)) == 2

    def test_terminal_leads_untouched(self, db_session, world, make_lead, make_rule, now):
        make_rule()
        won = make_lead(won_at=now - timedelta(days=1), last_contact_at=now - timedelta(hours=72))
        lost = make_lead(lost_at=now - timedelta(days=1), last_contact_at=now - timedelta(hours=72))

        result = run_rules(db_session, now)

        assert result['processed'] == 0
        assert db_session.get(Lead, won.id).tags == []
        assert db_session.get(Lead, lost.id).tags == []
        assert _all(db_session, ExecutionRecord) == []

    def test_failed_action_gives_partial_ledger_row(self, db_session, world, make_lead, make_rule, now):
        rule = make_rule(actions=[
            {'type': 'move_stage', 'stage_id': 9999},
            {'type': 'add_tag', 'tag': 'nudged'},
        ])
        lead = make_lead(last_contact_at=now - timedelta(hours=72))

        result = run_rules(db_session, now)

        assert result['failed'] == 1
        assert any('move_stage' in e for e in result['errors'])
        assert db_session.get(Lead, lead.id).tags == ['nudged']
        assert [r.status for r in _all(db_session, ExecutionRecord, source_id=rule.id)] == ['partial']

    def test_move_stage_resets_stage_clock(self, db_session, world, make_lead, make_rule, now):
        make_rule(actions=[{'type': 'move_stage', 'stage_id': world.qualified.id}])
        lead = make_lead(last_contact_at=now - timedelta(hours=72), stage_entered_at=now - timedelta(days=3))

        run_rules(db_session, now)

        row = db_session.get(Lead, lead.id)
        assert row.stage_id == world.qualified.id
        assert as_utc(row.stage_entered_at) == now
        history = _all(db_session, HistoryEntry, lead_id=lead.id, action='stage_change')
        assert history[0].to_stage_id == world.qualified.id

    def test_invalid_rule_recorded_others_run(self, db_session, world, make_lead, make_rule, now):
        broken = make_rule(name='Broken', trigger_type='stage_entry', stage_id=None)
        make_rule()
        make_lead(last_contact_at=now - timedelta(hours=72))

        result = run_rules(db_session, now)

        assert any(f'rule {broken.id}' in e for e in result['errors'])
        assert result['succeeded'] == 1
        assert result['rules'] == 2

    def test_stage_entry_rule(self, db_session, world, make_lead, make_rule, now):
        make_rule(trigger_type='stage_entry', trigger_config={}, stage_id=world.qualified.id,
                  actions=[{'type': 'add_tag', 'tag': 'qualified'}])
        inside = make_lead(stage_id=world.qualified.id)
        outside = make_lead(stage_id=world.new.id)

        run_rules(db_session, now)

        assert db_session.get(Lead, inside.id).tags == ['qualified']
        assert db_session.get(Lead, outside.id).tags == []

    def test_unknown_rule(self, db_session, world, now):
        with pytest.raises(NotFoundError):
            run_rules(db_session, now, rule_id=999)

    def test_store_failure_is_upstream_error(self, db_session, world, make_rule, now):
        make_rule()
        with patch('leadflow.engine.runner.load_stages',
                   side_effect=OperationalError('SELECT', {}, Exception('connection refused'))):
            with pytest.raises(UpstreamError):
                run_rules(db_session, now)

    def test_one_lead_failing_does_not_block_others(self, db_session, world, make_lead, make_rule, now):
        make_rule()
        good = make_lead(last_contact_at=now - timedelta(hours=72))
        bad = make_lead(last_contact_at=now - timedelta(hours=72))
        real_apply = store.apply_isolated

        def flaky(session, effects, label=None):
            if label.endswith(f'lead {bad.id}'):
                raise RuntimeError('constraint violated')
            return real_apply(session, effects, label=label)

        with patch('leadflow.engine.runner.apply_isolated', side_effect=flaky):
            result = run_rules(db_session, now)

        assert result['succeeded'] == 1
        assert result['failed'] == 1
        assert 'constraint violated' in result['errors'][0]
        assert db_session.get(Lead, good.id).tags == ['follow-up']
        assert [r.lead_id for r in _all(db_session, ExecutionRecord)] == [good.id]

    @pytest.mark.parametrize('trigger_type, trigger_config, matching', [
        ('time_in_stage', {'max_days': 3}, lambda now: {'stage_entered_at': now - timedelta(days=10)}),
        ('no_contact', {'hours': 48}, lambda now: {'last_contact_at': now - timedelta(days=4)}),
        ('temperature_change', {'temperature': 'hot'}, lambda now: {'temperature': 'hot'}),
    ])
    def test_non_matching_leads_do_not_fill_the_batch(self, db_session, world, make_lead, make_rule, now,
                                                      trigger_type, trigger_config, matching):
        rule = make_rule(trigger_type=trigger_type, trigger_config=trigger_config)
        make_lead()
        make_lead()
        target = make_lead(**matching(now))

        for hour in range(5):
            run_rules(db_session, now + timedelta(hours=hour), limit=2)

        records = _all(db_session, ExecutionRecord, source_type='rule', source_id=rule.id)
        assert [r.lead_id for r in records] == [target.id]

    def test_matching_leads_beyond_limit_drain_over_ticks(self, db_session, world, make_lead, make_rule, now):
        make_rule()
        leads = [make_lead(last_contact_at=now - timedelta(hours=72)) for _ in range(3)]

        first = run_rules(db_session, now, limit=2)
        second = run_rules(db_session, now + timedelta(hours=1), limit=2)

        assert (first['processed'], second['processed']) == (2, 1)
        assert sorted(r.lead_id for r in _all(db_session, ExecutionRecord)) == [l.id for l in leads]

    def test_inactive_rule_not_run_by_id(self, db_session, world, make_lead, make_rule, now):
        rule = make_rule(is_active=False)
        make_lead(last_contact_at=now - timedelta(hours=72))

        with pytest.raises(NotFoundError):
            run_rules(db_session, now, rule_id=rule.id)
        assert _all(db_session, ExecutionRecord) == []


# ---------------------------------------------------------------------------
# SLA
# ---------------------------------------------------------------------------

@pytest.fixture
def sla_config(db_session, world):
    config = SLAConfig(pipeline_id=world.pipeline.id, warning_hours=24, max_hours=48, critical_hours=72)
    db_session.add(config)
    db_session.commit()
    return config


class TestRunSlaChecks:

    def test_breach_alert_sent_once(self, db_session, world, sla_config, make_lead, now):
        lead = make_lead(assigned_to=world.sdr1.id, stage_entered_at=now - timedelta(hours=50))

        first = run_sla_checks(db_session, now)
        second = run_sla_checks(db_session, now + timedelta(hours=2))

        assert first['alerts']['breach'] == 1
        assert second['alerts']['breach'] == 0
        notes = _all(db_session, Notification, lead_id=lead.id, type='sla_breach')
        assert len(notes) == 1
        assert notes[0].agent_id == world.sdr1.id

    def test_critical_escalates_and_posts_digest(self, db_session, world, sla_config, make_lead, now):
        lead = make_lead(assigned_to=world.sdr1.id, stage_entered_at=now - timedelta(hours=80))

        with patch('leadflow.engine.runner.notify_critical_sla') as mock_notify:
            result = run_sla_checks(db_session, now)

        assert result['alerts']['critical'] == 1
        escalations = _all(db_session, Notification, lead_id=lead.id, type='sla_escalation')
        assert [n.agent_id for n in escalations] == [world.coordinator.id]
        mock_notify.assert_called_once()

    def test_stage_config_overrides_pipeline(self, db_session, world, sla_config, make_lead, now):
        db_session.add(SLAConfig(stage_id=world.new.id, warning_hours=1, max_hours=2, critical_hours=500))
        db_session.commit()
        make_lead(stage_entered_at=now - timedelta(hours=5))

        result = run_sla_checks(db_session, now)

        assert result['alerts']['breach'] == 1

    def test_stale_lead(self, db_session, world, make_lead, now):
        lead = make_lead(last_contact_at=now - timedelta(hours=30))

        result = run_sla_checks(db_session, now)

        assert result['alerts']['stale'] == 1
        assert len(_all(db_session, Notification, lead_id=lead.id, type='lead_stale')) == 1

    def test_terminal_leads_skipped(self, db_session, world, sla_config, make_lead, now):
        make_lead(stage_entered_at=now - timedelta(hours=80), won_at=now - timedelta(hours=1))

        result = run_sla_checks(db_session, now)

        assert result['processed'] == 0
        assert _all(db_session, Notification) == []

    def test_paging(self, db_session, world, sla_config, make_lead, now):
        for _ in range(3):
            make_lead()

        first = run_sla_checks(db_session, now, limit=2, start_page=0, max_pages=1)
        rest = run_sla_checks(db_session, now, limit=2, start_page=first['next_page'], max_pages=1)

        assert (first['processed'], first['next_page']) == (2, 1)
        assert (rest['processed'], rest['next_page']) == (1, None)


# ---------------------------------------------------------------------------
# Distribution
# ---------------------------------------------------------------------------

class TestRunDistribution:

    def test_idle_agent_gets_the_lead(self, db_session, world, make_lead, now):
        for _ in range(3):
            make_lead(assigned_to=world.sdr1.id)
        lead = make_lead()

        result = run_distribution(db_session, now)

        assert result['succeeded'] == 1
        row = db_session.get(Lead, lead.id)
        assert row.assigned_to == world.sdr2.id
        assert as_utc(row.first_contact_at) == now
        task = _all(db_session, Task, lead_id=lead.id)[0]
        assert task.priority == 'high'
        assert as_utc(task.due_at) == now + timedelta(minutes=5)
        assert _all(db_session, Notification, lead_id=lead.id, type='lead_assigned')[0].agent_id == world.sdr2.id
        assert result['loads'] == {str(world.sdr1.id): 3, str(world.sdr2.id): 1}

    def test_even_split(self, db_session, world, make_lead, now):
        leads = [make_lead() for _ in range(4)]

        run_distribution(db_session, now)

        owners = [db_session.get(Lead, l.id).assigned_to for l in leads]
        assert owners.count(world.sdr1.id) == 2
        assert owners.count(world.sdr2.id) == 2

    def test_lead_without_team_counted_not_loaded(self, db_session, world, make_lead, now):
        lead = make_lead(team_id=None)

        result = run_distribution(db_session, now)

        assert result['processed'] == 0
        assert result['unroutable'] == 1
        assert db_session.get(Lead, lead.id).assigned_to is None

    def test_unroutable_leads_do_not_fill_the_batch(self, db_session, world, make_lead, now):
        empty_team = Team(name='Nobody home')
        db_session.add(empty_team)
        db_session.commit()
        make_lead(team_id=None)
        make_lead(team_id=empty_team.id)
        routable = make_lead()

        result = run_distribution(db_session, now, limit=2)

        assert result['succeeded'] == 1
        assert db_session.get(Lead, routable.id).assigned_to in (world.sdr1.id, world.sdr2.id)
        assert result['unroutable'] == 2

    def test_dry_run_assigns_nothing(self, db_session, world, make_lead, now):
        lead = make_lead()

        result = execute_run(run_distribution, now=now, dry_run=True)

        assert result['dry_run'] is True
        assert result['succeeded'] == 1
        assert db_session.get(Lead, lead.id).assigned_to is None
        assert _all(db_session, Task) == []


# ---------------------------------------------------------------------------
# Temperature
# ---------------------------------------------------------------------------

class TestRunTemperature:

    def test_frequent_interactions_heat_lead(self, db_session, world, make_lead, now):
        hot = make_lead(assigned_to=world.sdr1.id)
        quiet = make_lead()
        for hours in (12, 24, 36):
            db_session.add(Interaction(lead_id=hot.id, created_at=now - timedelta(hours=hours)))
        db_session.commit()

        result = run_temperature(db_session, now)

        assert result['changed'] == 1
        assert result['temperatures'] == {'hot': 1, 'cold': 1}
        assert db_session.get(Lead, hot.id).temperature == 'hot'
        assert db_session.get(Lead, quiet.id).temperature == 'cold'
        assert len(_all(db_session, HistoryEntry, lead_id=hot.id, action='temperature_change')) == 1
        assert len(_all(db_session, Notification, lead_id=hot.id, type='lead_heated')) == 1

    def test_proposal_stage_is_hot(self, db_session, world, make_lead, now):
        lead = make_lead(stage_id=world.proposal.id)

        run_temperature(db_session, now)

        assert db_session.get(Lead, lead.id).temperature == 'hot'


# ---------------------------------------------------------------------------
# Cadences
# ---------------------------------------------------------------------------

@pytest.fixture
def cadence(db_session, world):
    cadence = Cadence(name='Welcome', channel='whatsapp', stage_id=world.new.id)
    db_session.add(cadence)
    db_session.flush()
    db_session.add_all([
        CadenceStep(cadence_id=cadence.id, position=0, day_offset=0, message_template='Oi {{nome}}!'),
        CadenceStep(cadence_id=cadence.id, position=1, day_offset=3, message_template='Tudo certo, {{nome}}?'),
    ])
    db_session.commit()
    return cadence


class TestRunCadences:

    def test_day_three_step_fires_once(self, db_session, world, cadence, make_lead, now):
        lead = make_lead(stage_entered_at=now - timedelta(days=3, hours=2))

        first = run_cadences(db_session, now)
        second = run_cadences(db_session, now + timedelta(hours=3))

        assert first['messages_enqueued'] == 1
        assert second['messages_enqueued'] == 0
        messages = _all(db_session, DispatchMessage, lead_id=lead.id)
        assert [(m.status, m.step_index, m.content) for m in messages] == [('pending', 1, 'Tudo certo, Maria?')]
        records = _all(db_session, ExecutionRecord, source_type='cadence')
        assert [(r.source_id, r.step_index) for r in records] == [(cadence.id, 1)]

    def test_nothing_due(self, db_session, world, cadence, make_lead, now):
        make_lead(stage_entered_at=now - timedelta(days=2))

        assert run_cadences(db_session, now)['messages_enqueued'] == 0

    def test_unknown_cadence(self, db_session, world, now):
        with pytest.raises(NotFoundError):
            run_cadences(db_session, now, cadence_id=404)

    def test_inactive_cadence_not_run_by_id(self, db_session, world, cadence, now):
        cadence.is_active = False
        db_session.commit()
        with pytest.raises(NotFoundError):
            run_cadences(db_session, now, cadence_id=cadence.id)

    def test_due_lead_beyond_limit_fires_on_its_day(self, db_session, world, cadence, make_lead, now):
        for _ in range(2):
            make_lead(stage_entered_at=now - timedelta(days=1))
        late = make_lead(stage_entered_at=now - timedelta(days=3, minutes=30))

        for hour in range(23):
            run_cadences(db_session, now + timedelta(hours=hour), limit=2)

        messages = _all(db_session, DispatchMessage, lead_id=late.id)
        assert [m.step_index for m in messages] == [1]
        assert len(_all(db_session, DispatchMessage)) == 1


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

class TestRunEscalation:

    def test_stuck_lead_goes_to_senior_once(self, db_session, world, make_lead, now):
        lead = make_lead(assigned_to=world.sdr1.id, stage_entered_at=now - timedelta(days=15))

        first = run_escalation(db_session, now)
        second = run_escalation(db_session, now + timedelta(hours=1))

        assert first['escalated'] == 1
        assert second['escalated'] == 0
        assert second['skipped'] == 1
        row = db_session.get(Lead, lead.id)
        assert row.assigned_to == world.senior.id
        assert 'escalated' in row.tags
        notes = {(n.type, n.agent_id) for n in _all(db_session, Notification, lead_id=lead.id)}
        assert notes == {('lead_received', world.senior.id), ('lead_escalated', world.sdr1.id)}

    def test_non_sales_pipeline_ignored(self, db_session, world, make_lead, now):
        onboarding = Pipeline(name='Onboarding', kind='post_sale')
        db_session.add(onboarding)
        db_session.flush()
        stage = Stage(pipeline_id=onboarding.id, name='Kickoff', position=0)
        db_session.add(stage)
        db_session.commit()
        make_lead(pipeline_id=onboarding.id, stage_id=stage.id, stage_entered_at=now - timedelta(days=30))

        assert run_escalation(db_session, now)['processed'] == 0


# ---------------------------------------------------------------------------
# Task SLA
# ---------------------------------------------------------------------------

class TestRunTaskSla:

    def test_overdue_and_reminders(self, db_session, world, make_lead, now):
        lead = make_lead(assigned_to=world.sdr1.id)
        closed = make_lead(assigned_to=world.sdr1.id, lost_at=now - timedelta(days=1))
        overdue = Task(lead_id=lead.id, assigned_to=world.sdr1.id, title='Send proposal',
                       status='pending', due_at=now - timedelta(hours=1))
        soon = Task(lead_id=lead.id, assigned_to=world.sdr1.id, title='Call',
                    status='pending', due_at=now + timedelta(hours=1))
        later = Task(lead_id=lead.id, assigned_to=world.sdr1.id, title='Email',
                     status='pending', due_at=now + timedelta(days=1))
        ignored = Task(lead_id=closed.id, assigned_to=world.sdr1.id, title='Old',
                       status='pending', due_at=now - timedelta(days=2))
        db_session.add_all([overdue, soon, later, ignored])
        db_session.commit()

        result = run_task_sla(db_session, now)

        assert (result['overdue'], result['reminders']) == (1, 1)
        assert db_session.get(Task, overdue.id).status == 'overdue'
        assert db_session.get(Task, overdue.id).escalated is True
        assert as_utc(db_session.get(Task, soon.id).reminded_at) == now
        assert db_session.get(Task, later.id).reminded_at is None
        assert db_session.get(Task, ignored.id).status == 'pending'

        again = run_task_sla(db_session, now + timedelta(minutes=10))
        assert (again['overdue'], again['reminders']) == (0, 0)


# ---------------------------------------------------------------------------
# execute_run
# ---------------------------------------------------------------------------

class TestExecuteRun:

    def test_commits(self, db_session, world, make_lead, make_rule, now):
        make_rule()
        make_lead(last_contact_at=now - timedelta(hours=72))

        result = execute_run(run_rules, now=now)

        assert result['dry_run'] is False
        db_session.expire_all()
        assert len(_all(db_session, ExecutionRecord)) == 1

    def test_dry_run_writes_nothing(self, db_session, world, make_lead, make_rule, now):
        rule = make_rule()
        lead = make_lead(last_contact_at=now - timedelta(hours=72))

        result = execute_run(run_rules, now=now, dry_run=True)

        assert result['processed'] == 1
        assert _all(db_session, ExecutionRecord) == []
        assert db_session.get(Lead, lead.id).tags == []
        assert db_session.get(AutomationRule, rule.id).run_count in (0, None)

    def test_exception_rolls_back_and_propagates(self, db_session, world, now):
        def broken(session, now, dry_run=False):
            session.add(Notification(type='x', title='x', created_at=now))
            raise RuntimeError('boom')

        with pytest.raises(RuntimeError):
            execute_run(broken, now=now)
        assert _all(db_session, Notification) == []
