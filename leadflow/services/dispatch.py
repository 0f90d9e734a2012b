"""
Outbound Dispatch Queue — staging rows for WhatsApp/SMS/email messages.

The engine only ever inserts `pending` rows. drain_pending() promotes due
rows to `ready` and, when a provider gateway is configured, hands their ids
to an RQ job that forwards them one at a time with a fixed pause between
calls. Delivery itself is the gateway's business; at-least-once is fine.
"""
import logging
import time
from datetime import datetime
from typing import List, Optional

import requests
from sqlalchemy import select

from leadflow.config import DISPATCH_DELAY_SECONDS, DISPATCH_GATEWAY_TOKEN, DISPATCH_GATEWAY_URL
from leadflow.database import get_session
from leadflow.engine.base import utcnow
from leadflow.models.message import DispatchMessage
from leadflow.services.circuit_breaker import CircuitOpenError, get_breaker

logger = logging.getLogger('services.dispatch')


# ── Lazy RQ queue (no Redis connection at import time) ────────────────────

_queue = None

def _get_queue():
    global _queue
    if _queue is None:
        from leadflow.extensions import queue_connection
        from rq import Queue
        _queue = Queue('dispatch', connection=queue_connection)
    return _queue


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_message(session, lead_id: int, phone: str, channel: str, content: str,
                    scheduled_for: Optional[datetime] = None, cadence_id: Optional[int] = None,
                    step_index: Optional[int] = None, template_id: Optional[int] = None) -> DispatchMessage:
    """Insert a pending dispatch row in the caller's transaction."""
    now = utcnow()
    message = DispatchMessage(
        lead_id=lead_id,
        phone=phone or '',
        channel=channel,
        content=content,
        cadence_id=cadence_id,
        step_index=step_index,
        template_id=template_id,
        status='pending',
        scheduled_for=scheduled_for or now,
        created_at=now,
    )
    session.add(message)
    session.flush()
    return message


# ── Drain ─────────────────────────────────────────────────────────────────────

def drain_pending(session, now: datetime, limit: int = 50) -> List[int]:
    """Mark due pending messages ready; returns their ids. Caller commits."""
    rows = session.execute(
        select(DispatchMessage)
        .where(DispatchMessage.status == 'pending')
        .where(DispatchMessage.scheduled_for <= now)
        .order_by(DispatchMessage.scheduled_for, DispatchMessage.id)
        .limit(limit)
    ).scalars().all()

    for row in rows:
        row.status = 'ready'
    return [row.id for row in rows]


def schedule_delivery(message_ids: List[int]) -> Optional[str]:
    """Enqueue the RQ delivery job once the ready rows are committed."""
    if not message_ids:
        return None
    if not DISPATCH_GATEWAY_URL:
        logger.info("%d message(s) ready; no gateway configured, left for pickup", len(message_ids))
        return None
    job = _get_queue().enqueue(deliver_messages, message_ids, job_timeout=600)
    logger.info("Queued delivery job %s for %d message(s)", job.id, len(message_ids))
    return job.id


def forward_message(message: DispatchMessage):
    """POST one message to the provider gateway through the dispatch breaker."""
    headers = {}
    if DISPATCH_GATEWAY_TOKEN:
        headers['Authorization'] = f'Bearer {DISPATCH_GATEWAY_TOKEN}'
    payload = {
        'id': message.id,
        'lead_id': message.lead_id,
        'phone': message.phone,
        'channel': message.channel,
        'content': message.content,
    }

    def _send():
        resp = requests.post(DISPATCH_GATEWAY_URL, json=payload, headers=headers, timeout=15)
        resp.raise_for_status()
        return resp

    return get_breaker('dispatch').call(_send)


def deliver_messages(message_ids: List[int]):
    """
    RQ job: forward ready messages to the gateway, pausing between calls.

    An open breaker stops the batch and puts the unsent rows back to
    `pending` so the next drain picks them up.
    """
    session = get_session()
    sent = failed = 0
    try:
        rows = session.execute(
            select(DispatchMessage)
            .where(DispatchMessage.id.in_(message_ids))
            .where(DispatchMessage.status == 'ready')
            .order_by(DispatchMessage.id)
        ).scalars().all()

        for i, row in enumerate(rows):
            if i > 0:
                time.sleep(DISPATCH_DELAY_SECONDS)
            try:
                forward_message(row)
                row.status = 'sent'
                row.error = None
                sent += 1
            except CircuitOpenError as e:
                logger.warning("Dispatch gateway circuit open, stopping batch: %s", e)
                for pending in rows[i:]:
                    pending.status = 'pending'
                session.commit()
                break
            except requests.RequestException as e:
                logger.error("Dispatch of message %s failed: %s", row.id, e)
                row.status = 'failed'
                row.error = str(e)[:500]
                failed += 1
            session.commit()

        logger.info("Delivered %d message(s), %d failed", sent, failed)
        return {'sent': sent, 'failed': failed}
    finally:
        session.close()

