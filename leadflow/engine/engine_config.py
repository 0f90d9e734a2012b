"""
Engine configuration loader — SLA, temperature, dedupe and escalation thresholds.

YAML file with in-memory cache and hardcoded fallback if the file is missing.
Individual keys missing from the YAML fall back to the defaults below.
"""
import logging
import os

import yaml

logger = logging.getLogger('engine.config')


_engine_config = None


def _default_config():
    """Hardcoded fallback if YAML is missing."""
    return {
        'version': 'default',
        'rules': {
            'default_dedupe_hours': 24,
            'scheduled_tolerance_minutes': 30,
            'default_max_days': 7,
            'default_no_contact_hours': 48,
            'default_task_due_hours': 24,
        },
        'sla': {
            'alert_dedupe_hours': 4,
            'stale_after_hours': 24,
            'stale_dedupe_hours': 12,
            'business_hours_per_day': 8,
        },
        'distribution': {
            'first_contact_minutes': 5,
        },
        'temperature': {
            'interaction_window_days': 7,
            'sentiment_window_days': 14,
            'hot_min_interactions': 3,
            'hot_max_idle_days': 2,
            'positive_ratio': 0.7,
            'high_value_threshold': 10000,
            'high_value_max_idle_days': 3,
            'warm_max_idle_days': 5,
            'hot_hold_days': 7,
            'cold_after_days': 7,
            'min_sentiment_samples': 2,
        },
        'escalation': {
            'after_days': 14,
            'dedupe_days': 7,
            'task_due_hours': 24,
        },
        'tasks': {
            'reminder_window_hours': 2,
        },
        'master': {
            'budget_seconds': 25,
        },
    }


def load_engine_config() -> dict:
    """Load engine config from YAML, with in-memory cache and hardcoded fallback."""
    global _engine_config
    if _engine_config is not None:
        return _engine_config

    config_path = os.path.join(os.path.dirname(__file__), 'engine_config.yaml')
    try:
        with open(config_path, 'r') as f:
            _engine_config = yaml.safe_load(f) or {}
        logger.info("Config loaded from YAML (version=%s)", _engine_config.get('version', '?'))
    except Exception as e:
        logger.warning("YAML config not found (%s), using defaults", e)
        _engine_config = _default_config()

    return _engine_config


def get_setting(section: str, key: str):
    """Read one threshold, falling back to the hardcoded default for that key."""
    cfg = load_engine_config()
    value = cfg.get(section, {}).get(key)
    if value is None:
        value = _default_config()[section][key]
    return value


def reset_engine_config():
    """Drop the cached config so the next read reloads the YAML."""
    global _engine_config
    _engine_config = None
