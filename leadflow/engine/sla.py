"""
SLA Clock — classifies how long a lead has sat in its current stage.

Tiers: none < warning < breach < critical. Elapsed time runs from
stage_entered_at (created_at for leads that never moved). Business-hours
SLAs use a flat 8h-per-day approximation: full days count 8h each and the
remainder is capped at 8h. It ignores weekends and working-hour windows.

Alerts go to the assigned agent (or unrouted to the team board when the
lead has no owner). Critical alerts also go to every coordinator. An alert
type is only sent once per lead per dedupe window. The stale-lead check is
independent of SLA configs: no contact for 24h raises `lead_stale`, deduped
over its own window.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from leadflow.engine.base import CreateNotification, LeadSnapshot, as_utc, hours_between
from leadflow.engine.engine_config import get_setting

logger = logging.getLogger('engine.sla')


TIERS = ['none', 'warning', 'breach', 'critical']

ALERT_TYPES = {
    'warning': 'sla_warning',
    'breach': 'sla_breach',
    'critical': 'sla_critical',
}

ESCALATION_TYPE = 'sla_escalation'
STALE_TYPE = 'lead_stale'


@dataclass(frozen=True)
class SLAPolicy:
    warning_hours: float
    max_hours: float
    critical_hours: float
    business_hours_only: bool = False
    pipeline_id: Optional[int] = None
    stage_id: Optional[int] = None

    @classmethod
    def from_model(cls, row) -> 'SLAPolicy':
        return cls(
            warning_hours=float(row.warning_hours),
            max_hours=float(row.max_hours),
            critical_hours=float(row.critical_hours),
            business_hours_only=bool(row.business_hours_only),
            pipeline_id=row.pipeline_id,
            stage_id=row.stage_id,
        )


def select_policy(lead: LeadSnapshot, policies: Iterable[SLAPolicy]) -> Optional[SLAPolicy]:
    """Stage-scoped policy wins over a pipeline-scoped one."""
    pipeline_match = None
    for policy in policies:
        if policy.stage_id is not None and policy.stage_id == lead.stage_id:
            return policy
        if policy.stage_id is None and policy.pipeline_id == lead.pipeline_id and pipeline_match is None:
            pipeline_match = policy
    return pipeline_match


def business_hours_elapsed(hours: float) -> float:
    """Flat approximation: 8h per full day plus the remainder capped at 8h."""
    per_day = float(get_setting('sla', 'business_hours_per_day'))
    if hours <= 0:
        return 0.0
    full_days = math.floor(hours / 24)
    remainder = hours - full_days * 24
    return full_days * per_day + min(remainder, per_day)


def elapsed_hours(lead: LeadSnapshot, now: datetime, business_hours_only: bool = False) -> float:
    start = lead.stage_clock_start
    if start is None:
        return 0.0
    hours = max(0.0, hours_between(start, now))
    if business_hours_only:
        return business_hours_elapsed(hours)
    return hours


def tier_for_hours(hours: float, policy: SLAPolicy) -> str:
    if hours >= policy.critical_hours:
        return 'critical'
    if hours >= policy.max_hours:
        return 'breach'
    if hours >= policy.warning_hours:
        return 'warning'
    return 'none'


def classify(lead: LeadSnapshot, policy: SLAPolicy, now: datetime) -> str:
    """Return none / warning / breach / critical for the lead's current stage."""
    return tier_for_hours(elapsed_hours(lead, now, policy.business_hours_only), policy)


# ── Alerts ────────────────────────────────────────────────────────────────────

@dataclass
class SLAAlert:
    lead_id: int
    tier: str
    hours: float
    effects: List = field(default_factory=list)

    def to_dict(self):
        return {'lead_id': self.lead_id, 'tier': self.tier, 'hours': round(self.hours, 1)}


def _sent_within(last_sent: Dict[str, datetime], alert_type: str, now: datetime, window_hours: float) -> bool:
    sent_at = last_sent.get(alert_type)
    if sent_at is None:
        return False
    return as_utc(sent_at) >= as_utc(now) - timedelta(hours=window_hours)


def check_lead(
    lead: LeadSnapshot,
    policy: SLAPolicy,
    now: datetime,
    last_sent: Dict[str, datetime],
    coordinator_ids: List[int],
    stage_name: str = '',
) -> Optional[SLAAlert]:
    """
    Classify one lead and build its alert notifications.

    `last_sent` maps notification type → latest created_at for this lead.
    Returns None when the lead is within SLA or the alert was sent recently.
    """
    if lead.is_terminal:
        return None

    hours = elapsed_hours(lead, now, policy.business_hours_only)
    tier = tier_for_hours(hours, policy)
    if tier == 'none':
        return None

    alert_type = ALERT_TYPES[tier]
    if _sent_within(last_sent, alert_type, now, float(get_setting('sla', 'alert_dedupe_hours'))):
        logger.debug("Lead %s: %s already sent inside dedupe window", lead.id, alert_type)
        return None

    where = f" in {stage_name}" if stage_name else ''
    title = {
        'warning': f"SLA warning: {lead.name}",
        'breach': f"SLA breached: {lead.name}",
        'critical': f"SLA critical: {lead.name}",
    }[tier]
    message = f"{lead.name} has been{where} for {hours:.1f}h (limit {policy.max_hours:g}h)."
    extra = {'tier': tier, 'hours': round(hours, 1), 'max_hours': policy.max_hours}

    alert = SLAAlert(lead_id=lead.id, tier=tier, hours=hours)
    alert.effects.append(CreateNotification(
        agent_id=lead.assigned_to,
        lead_id=lead.id,
        type=alert_type,
        title=title,
        message=message,
        created_at=now,
        extra=extra,
    ))

    if tier == 'critical':
        for coordinator_id in coordinator_ids:
            if coordinator_id == lead.assigned_to:
                continue
            alert.effects.append(CreateNotification(
                agent_id=coordinator_id,
                lead_id=lead.id,
                type=ESCALATION_TYPE,
                title=f"SLA escalation: {lead.name}",
                message=message,
                created_at=now,
                extra=dict(extra, alert_type=alert_type),
            ))
    return alert


def check_stale(lead: LeadSnapshot, now: datetime, last_sent: Dict[str, datetime]) -> Optional[SLAAlert]:
    """No contact for stale_after_hours (created_at if never contacted) ⇒ lead_stale."""
    if lead.is_terminal:
        return None

    reference = lead.last_contact_at or lead.created_at
    if reference is None:
        return None
    hours = hours_between(reference, now)
    if hours < float(get_setting('sla', 'stale_after_hours')):
        return None
    if _sent_within(last_sent, STALE_TYPE, now, float(get_setting('sla', 'stale_dedupe_hours'))):
        return None

    alert = SLAAlert(lead_id=lead.id, tier='stale', hours=hours)
    alert.effects.append(CreateNotification(
        agent_id=lead.assigned_to,
        lead_id=lead.id,
        type=STALE_TYPE,
        title=f"No contact with {lead.name}",
        message=f"{lead.name} has had no contact for {math.floor(hours)}h.",
        created_at=now,
        extra={'hours': round(hours, 1)},
    ))
    return alert
