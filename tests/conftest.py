"""Shared test fixtures."""
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy.orm import sessionmaker

from leadflow import import_models
from leadflow.database import Base, build_engine
from leadflow.engine.base import LeadSnapshot, Ledger

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

# Modules that bind get_session at import time
_SESSION_USERS = [
    'leadflow.database.get_session',
    'leadflow.engine.runner.get_session',
    'leadflow.engine.orchestrator.get_session',
    'leadflow.services.dispatch.get_session',
    'leadflow.routes.messages.get_session',
    'leadflow.routes.monitor.get_session',
]


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created."""
    engine = build_engine('sqlite:///:memory:')
    import_models()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """SQLAlchemy session bound to in-memory SQLite. Rolls back after each test."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def patch_get_session(db_session):
    """Route all get_session() calls to the test session.

    We disable close() so that runners and route handlers calling
    session.close() in their finally blocks don't invalidate the shared
    test session.
    """
    _real_close = db_session.close
    db_session.close = lambda: None
    with ExitStack() as stack:
        for target in _SESSION_USERS:
            stack.enter_context(patch(target, return_value=db_session))
        yield db_session
    db_session.close = _real_close


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class FakeRedis:
    """Minimal in-memory Redis fake covering the hash commands breakers use."""

    def __init__(self):
        self.hash_store = {}

    def hset(self, key, field, value):
        self.hash_store.setdefault(key, {})[field] = str(value)
        return 1

    def hincrby(self, key, field, amount=1):
        h = self.hash_store.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    def hdel(self, key, *fields):
        h = self.hash_store.get(key, {})
        return sum(1 for f in fields if h.pop(f, None) is not None)

    def hgetall(self, key):
        return dict(self.hash_store.get(key, {}))

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Fake Redis pipeline that replays queued commands on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def hset(self, key, field, value):
        self._ops.append(('hset', key, field, value))
        return self

    def hincrby(self, key, field, amount=1):
        self._ops.append(('hincrby', key, field, amount))
        return self

    def hdel(self, key, *fields):
        self._ops.append(('hdel', key) + fields)
        return self

    def execute(self):
        results = [getattr(self._redis, op[0])(*op[1:]) for op in self._ops]
        self._ops = []
        return results


@pytest.fixture
def fake_redis():
    """In-memory Redis fake with dict-backed hashes."""
    return FakeRedis()


@pytest.fixture
def breakers(fake_redis):
    """Breaker registry wired to the Redis fake."""
    from leadflow.services.circuit_breaker import init_breakers
    return init_breakers(fake_redis)


# ---------------------------------------------------------------------------
# Flask
# ---------------------------------------------------------------------------

@pytest.fixture
def app(fake_redis):
    """Flask test app with breakers on the Redis fake."""
    from leadflow import create_app
    from leadflow.services.circuit_breaker import init_breakers
    app = create_app()
    app.config['TESTING'] = True
    init_breakers(fake_redis)
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c


# ---------------------------------------------------------------------------
# Engine fakes
# ---------------------------------------------------------------------------

@pytest.fixture
def now():
    return NOW


class FakeLedger(Ledger):
    """In-memory execution ledger."""

    def __init__(self):
        self.rows = []

    def record(self, source_type, source_id, lead_id, executed_at, step_index=None):
        self.rows.append((source_type, source_id, lead_id, executed_at, step_index))

    def latest_executions(self, source_type, source_id, lead_ids, step_index=None):
        latest = {}
        for st, sid, lid, at, idx in self.rows:
            if st != source_type or sid != source_id or lid not in lead_ids:
                continue
            if step_index is not None and idx != step_index:
                continue
            if lid not in latest or at > latest[lid]:
                latest[lid] = at
        return latest


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def make_snapshot():
    """Factory fixture: LeadSnapshot with sensible defaults, in stage 1 of pipeline 10."""
    def _make(**overrides):
        defaults = dict(
            id=1,
            name='Maria Silva',
            pipeline_id=10,
            stage_id=1,
            team_id=5,
            assigned_to=100,
            temperature='cold',
            tags=[],
            phone='+5511999990000',
            stage_entered_at=NOW - timedelta(hours=1),
            last_activity_at=NOW - timedelta(hours=1),
            last_contact_at=NOW - timedelta(hours=1),
            created_at=NOW - timedelta(days=1),
        )
        defaults.update(overrides)
        return LeadSnapshot(**defaults)
    return _make


# ---------------------------------------------------------------------------
# Seeded store
# ---------------------------------------------------------------------------

@pytest.fixture
def world(db_session):
    """Sales pipeline with three stages, one team, two SDRs, a senior, a coordinator, a manager."""
    from leadflow.models.pipeline import Pipeline, Stage
    from leadflow.models.team import Agent, Team

    pipeline = Pipeline(name='Sales', kind='sales')
    team = Team(name='Squad A')
    db_session.add_all([pipeline, team])
    db_session.flush()

    new = Stage(pipeline_id=pipeline.id, name='New', category='intake', position=0)
    qualified = Stage(pipeline_id=pipeline.id, name='Qualified', category='qualification', position=1)
    proposal = Stage(pipeline_id=pipeline.id, name='Proposal', category='proposal', position=2)
    sdr1 = Agent(name='Ana', team_id=team.id, role='sdr')
    sdr2 = Agent(name='Bruno', team_id=team.id, role='sdr')
    senior = Agent(name='Carla', team_id=team.id, role='senior')
    coordinator = Agent(name='Diego', team_id=team.id, role='coordinator')
    manager = Agent(name='Elisa', team_id=None, role='manager')
    db_session.add_all([new, qualified, proposal, sdr1, sdr2, senior, coordinator, manager])
    db_session.commit()

    return SimpleNamespace(
        pipeline=pipeline, team=team,
        new=new, qualified=qualified, proposal=proposal,
        sdr1=sdr1, sdr2=sdr2, senior=senior, coordinator=coordinator, manager=manager,
    )


@pytest.fixture
def make_lead(db_session, world):
    """Factory fixture: committed Lead row in the seeded pipeline's first stage."""
    from leadflow.models.lead import Lead

    def _make(**overrides):
        defaults = dict(
            name='Maria Silva',
            phone='+5511999990000',
            pipeline_id=world.pipeline.id,
            stage_id=world.new.id,
            team_id=world.team.id,
            temperature='cold',
            tags=[],
            created_at=NOW - timedelta(hours=1),
            stage_entered_at=NOW - timedelta(hours=1),
            last_activity_at=NOW - timedelta(hours=1),
            last_contact_at=NOW - timedelta(hours=1),
        )
        defaults.update(overrides)
        lead = Lead(**defaults)
        db_session.add(lead)
        db_session.commit()
        return lead
    return _make
