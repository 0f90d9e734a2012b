"""Tests for leadflow.services.dispatch — pending rows, drain, and the RQ delivery job."""
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests
from sqlalchemy import select

from leadflow.models.message import DispatchMessage
from leadflow.services.circuit_breaker import OPEN
from leadflow.services.dispatch import (
    deliver_messages, drain_pending, enqueue_message, forward_message, schedule_delivery,
)

GATEWAY = 'https://gateway.test/send'


@pytest.fixture
def queued(db_session, world, make_lead, now):
    """Three pending messages due now and one scheduled for tomorrow."""
    lead = make_lead()
    due = [
        enqueue_message(db_session, lead.id, '+5511', 'whatsapp', f'msg {i}', scheduled_for=now - timedelta(minutes=i))
        for i in range(3)
    ]
    later = enqueue_message(db_session, lead.id, '+5511', 'sms', 'later', scheduled_for=now + timedelta(days=1))
    db_session.commit()
    return due, later


@pytest.fixture
def gateway():
    with patch('leadflow.services.dispatch.DISPATCH_GATEWAY_URL', GATEWAY), \
         patch('leadflow.services.dispatch.time.sleep') as mock_sleep, \
         patch('leadflow.services.dispatch.requests.post') as mock_post:
        mock_post.return_value = MagicMock(status_code=200)
        yield mock_post, mock_sleep


class TestEnqueueAndDrain:

    def test_enqueue_inserts_pending_row(self, db_session, world, make_lead, now):
        lead = make_lead()
        message = enqueue_message(db_session, lead.id, '+5511', 'whatsapp', 'Oi', cadence_id=2, step_index=1)
        assert message.id is not None
        assert message.status == 'pending'
        assert (message.cadence_id, message.step_index) == (2, 1)
        assert message.scheduled_for is not None

    def test_drain_marks_due_rows_ready(self, db_session, queued, now):
        due, later = queued
        ids = drain_pending(db_session, now)
        assert sorted(ids) == sorted(m.id for m in due)
        assert db_session.get(DispatchMessage, later.id).status == 'pending'
        assert all(db_session.get(DispatchMessage, i).status == 'ready' for i in ids)

    def test_drain_oldest_first_with_limit(self, db_session, queued, now):
        due, _ = queued
        assert drain_pending(db_session, now, limit=1) == [due[2].id]


class TestScheduleDelivery:

    def test_nothing_to_schedule(self):
        assert schedule_delivery([]) is None

    def test_no_gateway_leaves_rows_ready(self):
        with patch('leadflow.services.dispatch.DISPATCH_GATEWAY_URL', None), \
             patch('leadflow.services.dispatch._get_queue') as mock_queue:
            assert schedule_delivery([1, 2]) is None
        mock_queue.assert_not_called()

    def test_enqueues_rq_job(self):
        queue = MagicMock()
        queue.enqueue.return_value = MagicMock(id='job-123')
        with patch('leadflow.services.dispatch.DISPATCH_GATEWAY_URL', GATEWAY), \
             patch('leadflow.services.dispatch._get_queue', return_value=queue):
            assert schedule_delivery([1, 2]) == 'job-123'
        queue.enqueue.assert_called_once_with(deliver_messages, [1, 2], job_timeout=600)


class TestDeliverMessages:

    def _ready(self, db_session, now):
        ids = drain_pending(db_session, now)
        db_session.commit()
        return ids

    def test_sends_with_pause_between_calls(self, db_session, queued, breakers, gateway, now):
        mock_post, mock_sleep = gateway
        ids = self._ready(db_session, now)

        result = deliver_messages(ids)

        assert result == {'sent': 3, 'failed': 0}
        assert mock_post.call_count == 3
        assert mock_sleep.call_count == 2
        assert {db_session.get(DispatchMessage, i).status for i in ids} == {'sent'}
        payload = mock_post.call_args.kwargs['json']
        assert set(payload) == {'id', 'lead_id', 'phone', 'channel', 'content'}

    def test_gateway_error_marks_failed(self, db_session, queued, breakers, gateway, now):
        mock_post, _ = gateway
        mock_post.side_effect = [MagicMock(), requests.ConnectionError('reset'), MagicMock()]
        ids = self._ready(db_session, now)

        result = deliver_messages(ids)

        assert result == {'sent': 2, 'failed': 1}
        failed = db_session.get(DispatchMessage, ids[1])
        assert failed.status == 'failed'
        assert 'reset' in failed.error

    def test_open_circuit_requeues_rest(self, db_session, queued, breakers, fake_redis, gateway, now):
        mock_post, _ = gateway
        fake_redis.hset('cb:dispatch', 'state', OPEN)
        fake_redis.hset('cb:dispatch', 'opened_at', str(time.time()))
        ids = self._ready(db_session, now)

        result = deliver_messages(ids)

        assert result == {'sent': 0, 'failed': 0}
        mock_post.assert_not_called()
        assert {db_session.get(DispatchMessage, i).status for i in ids} == {'pending'}

    def test_skips_rows_no_longer_ready(self, db_session, queued, breakers, gateway, now):
        mock_post, _ = gateway
        due, later = queued
        assert deliver_messages([later.id]) == {'sent': 0, 'failed': 0}
        mock_post.assert_not_called()


def test_forward_message_sends_bearer_token(breakers, db_session, queued):
    due, _ = queued
    with patch('leadflow.services.dispatch.DISPATCH_GATEWAY_URL', GATEWAY), \
         patch('leadflow.services.dispatch.DISPATCH_GATEWAY_TOKEN', 'secret'), \
         patch('leadflow.services.dispatch.requests.post') as mock_post:
        forward_message(due[0])
    args, kwargs = mock_post.call_args
    assert args == (GATEWAY,)
    assert kwargs['headers'] == {'Authorization': 'Bearer secret'}
    mock_post.return_value.raise_for_status.assert_called_once()
