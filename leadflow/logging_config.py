"""
Structured logging configuration.

Called once from create_app(). LOG_FORMAT picks text or JSON, LOG_LEVEL
defaults to INFO.

Engine code tags records through `extra=` with the automation context
(engine, rule_id, cadence_id, lead_id, run_id). The JSON formatter lifts
those into top-level keys; the text formatter appends them as key=value
pairs, so one rule or one master run can be followed in either format.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone


CONTEXT_KEYS = ('engine', 'rule_id', 'cadence_id', 'lead_id', 'run_id')

TEXT_FORMAT = '[%(asctime)s] %(levelname)s %(name)s — %(message)s'


def record_context(record):
    """Automation context attached to a record, in CONTEXT_KEYS order."""
    context = {}
    for key in CONTEXT_KEYS:
        value = getattr(record, key, None)
        if value is not None:
            context[key] = value
    return context


class JSONFormatter(logging.Formatter):
    """Single-line JSON for log aggregators."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Human-readable lines with the automation context appended."""

    def __init__(self):
        super().__init__(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    def format(self, record):
        line = super().format(record)
        context = record_context(record)
        if not context:
            return line
        tags = ' '.join(f'{k}={v}' for k, v in context.items())
        # keep the traceback (if any) below the tagged first line
        head, sep, tail = line.partition('\n')
        return f'{head} [{tags}]{sep}{tail}'


# Third-party loggers that are noisy at INFO
_NOISY_LOGGERS = [
    'urllib3',
    'rq.worker',
    'sqlalchemy.engine',
    'werkzeug',
]


def configure_logging(app=None):
    """
    Set up the root logger from the environment.

        LOG_LEVEL  — Python level name (default INFO; unknown names fall back to INFO)
        LOG_FORMAT — "text" (default) or "json"
    """
    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    use_json = os.getenv('LOG_FORMAT', 'text').lower() == 'json'

    root = logging.getLogger()
    root.setLevel(level)
    # re-init from create_app() must not stack handlers
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ContextTextFormatter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if app is not None:
        app.logger.setLevel(level)
