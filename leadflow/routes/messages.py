"""
Messages blueprint — manual template sends and the dispatch-queue drain.
"""
import logging

from flask import Blueprint, jsonify, request

from leadflow.database import get_session
from leadflow.engine.base import utcnow
from leadflow.engine.runner import bounded_limit
from leadflow.engine.templates import lead_variables, render_message
from leadflow.errors import NotFoundError, ValidationError
from leadflow.models.lead import Lead
from leadflow.models.message import MessageTemplate
from leadflow.routes.automation import parse_options
from leadflow.services.dispatch import drain_pending, enqueue_message, schedule_delivery
from leadflow.services.store import snapshot_lead

logger = logging.getLogger('routes.messages')

bp = Blueprint('messages', __name__, url_prefix='/api/messages')


@bp.route('/send-template', methods=['POST'])
def send_template():
    """Render a stored template for one lead and queue it for dispatch."""
    data = request.get_json(silent=True) or {}
    lead_id = data.get('lead_id')
    template_key = data.get('template_key')
    template_id = data.get('template_id')
    if not lead_id or not (template_key or template_id):
        raise ValidationError("'lead_id' and 'template_key' (or 'template_id') are required")

    extra = data.get('variables') or {}
    if not isinstance(extra, dict):
        raise ValidationError("'variables' must be an object")

    session = get_session()
    try:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise NotFoundError(f"Lead {lead_id} not found")
        if lead.is_terminal:
            raise ValidationError(f"Lead {lead_id} is closed")

        if template_id:
            template = session.get(MessageTemplate, template_id)
        else:
            template = session.query(MessageTemplate).filter_by(key=template_key).first()
        if template is None or not template.is_active:
            raise NotFoundError(f"Template {template_key or template_id} not found")

        content = render_message(template.content, lead_variables(snapshot_lead(lead), extra))
        message = enqueue_message(
            session,
            lead_id=lead.id,
            phone=lead.phone,
            channel=data.get('channel') or template.channel,
            content=content,
            template_id=template.id,
        )
        session.commit()
        logger.info("Template %s queued for lead %s (message %s)", template.key, lead.id, message.id)

        return jsonify({
            'success': True,
            'message_id': message.id,
            'status': message.status,
            'channel': message.channel,
            'content': content,
            'timestamp': utcnow().isoformat(),
        })
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@bp.route('/drain', methods=['POST'])
def drain():
    """Promote due pending messages to ready and schedule their delivery."""
    opts, _, _ = parse_options(request.get_json(silent=True))
    limit = bounded_limit(opts.get('limit'), 50)

    session = get_session()
    try:
        ids = drain_pending(session, utcnow(), limit=limit)
        session.commit()
        job_id = schedule_delivery(ids)
        return jsonify({
            'success': True,
            'ready': len(ids),
            'message_ids': ids,
            'job_id': job_id,
            'timestamp': utcnow().isoformat(),
        })
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
