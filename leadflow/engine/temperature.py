"""
Temperature Classifier — cold / warm / hot from recent engagement.

Rules are checked in order, first match wins:

  hot   ≥3 interactions in 7d and active within 2 days
        positive share ≥70% of 14d interactions (at least one positive)
        stage category is proposal / negotiation
        estimated value ≥ 10000 and active within 3 days
  warm  ≥1 interaction in 7d and active within 5 days
        previously hot and active within 7 days
  cold  no activity for more than 7 days

If nothing matches the previous temperature is kept. Afterwards, a negative
majority over at least two 14d samples demotes one step (hot→warm→cold).
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from leadflow.config import HOT_STAGE_CATEGORIES
from leadflow.engine.base import (
    CreateNotification, InteractionSnapshot, LeadSnapshot, UpdateLead, WriteHistory, as_utc,
)
from leadflow.engine.engine_config import load_engine_config

logger = logging.getLogger('engine.temperature')

_DEMOTE = {'hot': 'warm', 'warm': 'cold', 'cold': 'cold'}


@dataclass(frozen=True)
class TemperatureSignals:
    interactions_7d: int
    positive: int
    negative: int
    samples: int
    days_idle: Optional[int]
    stage_category: Optional[str]
    estimated_value: float
    previous: str

    def to_dict(self):
        return {
            'interactions_7d': self.interactions_7d,
            'positive': self.positive,
            'negative': self.negative,
            'samples': self.samples,
            'days_idle': self.days_idle,
        }


@dataclass(frozen=True)
class TemperatureDecision:
    temperature: str
    reason: str
    signals: TemperatureSignals

    @property
    def changed(self) -> bool:
        return self.temperature != self.signals.previous


def days_since_activity(lead: LeadSnapshot, now: datetime, latest_interaction: Optional[datetime] = None) -> Optional[int]:
    """Whole days since the last sign of life; a newer interaction counts as activity."""
    reference = as_utc(lead.last_activity_at or lead.stage_entered_at or lead.created_at)
    if latest_interaction is not None and (reference is None or as_utc(latest_interaction) > reference):
        reference = as_utc(latest_interaction)
    if reference is None:
        return None
    return math.floor((as_utc(now) - as_utc(reference)).total_seconds() / 86400)


def gather_signals(
    lead: LeadSnapshot,
    interactions: List[InteractionSnapshot],
    now: datetime,
    stage_category: Optional[str] = None,
) -> TemperatureSignals:
    cfg = load_engine_config().get('temperature', {})
    now = as_utc(now)
    recent_cutoff = now - timedelta(days=cfg.get('interaction_window_days', 7))
    sentiment_cutoff = now - timedelta(days=cfg.get('sentiment_window_days', 14))

    recent = [i for i in interactions if as_utc(i.created_at) >= recent_cutoff]
    sampled = [i for i in interactions if as_utc(i.created_at) >= sentiment_cutoff]

    latest = max((i.created_at for i in interactions), key=as_utc, default=None)

    return TemperatureSignals(
        interactions_7d=len(recent),
        positive=sum(1 for i in sampled if i.sentiment == 'positive'),
        negative=sum(1 for i in sampled if i.sentiment == 'negative'),
        samples=len(sampled),
        days_idle=days_since_activity(lead, now, latest),
        stage_category=stage_category,
        estimated_value=float(lead.estimated_value or 0),
        previous=lead.temperature or 'cold',
    )


def _base_temperature(s: TemperatureSignals, cfg: dict):
    idle = s.days_idle if s.days_idle is not None else math.inf

    if s.interactions_7d >= cfg.get('hot_min_interactions', 3) and idle <= cfg.get('hot_max_idle_days', 2):
        return 'hot', 'frequent recent interactions'
    if s.positive > 0 and s.samples > 0 and s.positive / s.samples >= cfg.get('positive_ratio', 0.7):
        return 'hot', 'positive sentiment'
    if s.stage_category in HOT_STAGE_CATEGORIES:
        return 'hot', f'{s.stage_category} stage'
    if (s.estimated_value >= cfg.get('high_value_threshold', 10000)
            and idle <= cfg.get('high_value_max_idle_days', 3)):
        return 'hot', 'high value and active'

    if s.interactions_7d >= 1 and idle <= cfg.get('warm_max_idle_days', 5):
        return 'warm', 'recent interaction'
    if s.previous == 'hot' and idle <= cfg.get('hot_hold_days', 7):
        return 'warm', 'cooling from hot'

    if idle > cfg.get('cold_after_days', 7):
        return 'cold', 'inactive'

    return s.previous, 'unchanged'


def classify(
    lead: LeadSnapshot,
    interactions: List[InteractionSnapshot],
    now: datetime,
    stage_category: Optional[str] = None,
) -> TemperatureDecision:
    cfg = load_engine_config().get('temperature', {})
    signals = gather_signals(lead, interactions, now, stage_category)
    temperature, reason = _base_temperature(signals, cfg)

    if signals.samples >= cfg.get('min_sentiment_samples', 2) and signals.negative > signals.positive:
        demoted = _DEMOTE[temperature]
        if demoted != temperature:
            temperature, reason = demoted, f'{reason}; negative sentiment'

    return TemperatureDecision(temperature=temperature, reason=reason, signals=signals)


def temperature_effects(lead: LeadSnapshot, decision: TemperatureDecision, now: datetime) -> List:
    """Lead update + history; a notification only when crossing into or out of hot."""
    if not decision.changed:
        return []

    previous, current = decision.signals.previous, decision.temperature
    effects = [
        UpdateLead(lead.id, {'temperature': current}),
        WriteHistory(
            lead_id=lead.id,
            action='temperature_change',
            title=f"Temperature {previous} -> {current}",
            created_at=now,
            details={'from': previous, 'to': current, 'reason': decision.reason,
                     'signals': decision.signals.to_dict()},
        ),
    ]

    if lead.assigned_to is not None and (current == 'hot') != (previous == 'hot'):
        heated = current == 'hot'
        effects.append(CreateNotification(
            agent_id=lead.assigned_to,
            lead_id=lead.id,
            type='lead_heated' if heated else 'lead_cooled',
            title=f"{lead.name} is {'hot' if heated else 'cooling down'}",
            message=f"{lead.name}: {previous} -> {current} ({decision.reason}).",
            created_at=now,
        ))
    return effects
