"""
Notifications — Slack webhook integration for automation runs.

In-app notifications for agents are rows written by the engine; this module
only covers the ops channel. Notification failure never blocks a run.
"""
import logging
import requests

from leadflow.config import SLACK_WEBHOOK_URL
from leadflow.services.circuit_breaker import get_breaker

logger = logging.getLogger('services.notifications')


def _post(blocks):
    get_breaker('slack').call(requests.post, SLACK_WEBHOOK_URL, json={"blocks": blocks}, timeout=10)


def notify_master_run(run):
    """Post an orchestrator run summary to Slack when it did not fully succeed."""
    if not SLACK_WEBHOOK_URL or run.status == 'success':
        return

    try:
        results = run.results or {}
        fields = []
        for engine, summary in results.items():
            if isinstance(summary, dict):
                fields.append({
                    "type": "mrkdwn",
                    "text": f"*{engine}:* {summary.get('succeeded', 0)} ok / {summary.get('failed', 0)} failed",
                })

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"Automation run {run.status.upper()} ({run.duration_seconds or 0:.1f}s)",
                }
            },
        ]
        if fields:
            blocks.append({"type": "section", "fields": fields[:10]})

        if run.errors:
            first = run.errors[0]
            text = f"{first.get('engine', '?')}: {first.get('error', '')}" if isinstance(first, dict) else str(first)
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Error:* ```{text[:500]}```"}
            })

        if run.skipped:
            blocks.append({
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"Skipped (time budget): {', '.join(run.skipped)}"}]
            })

        _post(blocks)
        logger.info("Automation run %s notification sent", run.id)

    except Exception:
        logger.error("Failed to send notification for automation run %s", run.id, exc_info=True)


def notify_critical_sla(alerts):
    """Post a digest of leads that went critical in this SLA check."""
    if not SLACK_WEBHOOK_URL or not alerts:
        return

    try:
        lines = [f"• lead {a.lead_id}: {a.hours:.0f}h in stage" for a in alerts[:20]]
        if len(alerts) > 20:
            lines.append(f"…and {len(alerts) - 20} more")
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{len(alerts)} lead(s) hit critical SLA"}
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "\n".join(lines)}
            },
        ]
        _post(blocks)
        logger.info("Critical SLA digest sent (%d leads)", len(alerts))

    except Exception:
        logger.error("Failed to send critical SLA digest", exc_info=True)
