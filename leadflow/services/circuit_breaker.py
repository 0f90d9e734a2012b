"""
Redis-backed circuit breakers for outbound collaborators (dispatch gateway, Slack).

All state for one breaker lives in a single Redis hash `cb:<name>`:
  state, failures, opened_at, total_success, total_failure,
  last_success, last_failure, last_error

States:
  - CLOSED    → calls pass through
  - OPEN      → calls short-circuit with CircuitOpenError
  - HALF_OPEN → reset_timeout elapsed since opening; the next call is a probe

If Redis itself is unreachable the breaker fails open (calls pass through)
so a cache outage never stops dispatch.
"""
import logging
import time
from functools import wraps

from redis.exceptions import RedisError

logger = logging.getLogger('services.circuit_breaker')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'


class CircuitOpenError(Exception):
    """Raised instead of calling a collaborator whose breaker is open."""

    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is open; retry in {retry_after or 0:.0f}s")


class CircuitBreaker:
    """
    Usage:
        breaker = CircuitBreaker('dispatch', redis_client, failure_threshold=5, reset_timeout=120)
        breaker.call(requests.post, url, json=payload, timeout=10)
    """

    PREFIX = 'cb'

    def __init__(self, name, redis_client, failure_threshold=3, reset_timeout=300):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

    @property
    def key(self):
        return f'{self.PREFIX}:{self.name}'

    def _read(self):
        try:
            return self.redis.hgetall(self.key) or {}
        except RedisError as e:
            logger.debug("Circuit '%s': redis read failed (%s), failing open", self.name, e)
            return {}

    def _write(self, **fields):
        try:
            pipe = self.redis.pipeline()
            for field, value in fields.items():
                pipe.hset(self.key, field, value)
            pipe.execute()
        except RedisError as e:
            logger.debug("Circuit '%s': redis write failed: %s", self.name, e)

    # ── State ──

    def _state_from(self, data):
        state = data.get('state') or CLOSED
        if state == OPEN:
            opened_at = float(data.get('opened_at') or 0)
            if time.time() - opened_at >= self.reset_timeout:
                return HALF_OPEN
        return state

    @property
    def state(self):
        return self._state_from(self._read())

    @property
    def failure_count(self):
        return int(self._read().get('failures') or 0)

    # ── Calls ──

    def call(self, func, *args, **kwargs):
        data = self._read()
        state = self._state_from(data)
        if state == OPEN:
            opened_at = float(data.get('opened_at') or 0)
            retry_after = max(0.0, self.reset_timeout - (time.time() - opened_at))
            raise CircuitOpenError(self.name, retry_after=retry_after)
        if state == HALF_OPEN:
            logger.info("Circuit '%s' half-open, sending probe", self.name)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e, probing=state == HALF_OPEN)
            raise
        self._on_success()
        return result

    def protect(self, func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper

    def _on_success(self):
        try:
            pipe = self.redis.pipeline()
            pipe.hset(self.key, 'state', CLOSED)
            pipe.hset(self.key, 'failures', 0)
            pipe.hincrby(self.key, 'total_success', 1)
            pipe.hset(self.key, 'last_success', str(time.time()))
            pipe.execute()
        except RedisError as e:
            logger.debug("Circuit '%s': could not record success: %s", self.name, e)

    def _on_failure(self, error, probing=False):
        now = time.time()
        try:
            failures = self.redis.hincrby(self.key, 'failures', 1)
            self.redis.hincrby(self.key, 'total_failure', 1)
        except RedisError as e:
            logger.debug("Circuit '%s': could not record failure: %s", self.name, e)
            return

        fields = {'last_failure': str(now), 'last_error': str(error)[:200]}
        if probing or failures >= self.failure_threshold:
            fields.update(state=OPEN, opened_at=str(now))
            logger.warning(
                "Circuit '%s' OPEN after %d failures (threshold=%d): %s",
                self.name, failures, self.failure_threshold, error,
            )
        else:
            logger.info("Circuit '%s' failure %d/%d: %s", self.name, failures, self.failure_threshold, error)
        self._write(**fields)

    def reset(self):
        """Force the breaker closed and clear its failure count."""
        try:
            pipe = self.redis.pipeline()
            pipe.hset(self.key, 'state', CLOSED)
            pipe.hset(self.key, 'failures', 0)
            pipe.hdel(self.key, 'opened_at')
            pipe.execute()
            logger.info("Circuit '%s' manually reset", self.name)
        except RedisError as e:
            logger.error("Failed to reset circuit '%s': %s", self.name, e)
            raise

    def get_health(self):
        data = self._read()

        def _ts(field):
            return float(data[field]) if data.get(field) else None

        return {
            'name': self.name,
            'state': self._state_from(data),
            'failure_count': int(data.get('failures') or 0),
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'total_success': int(data.get('total_success') or 0),
            'total_failure': int(data.get('total_failure') or 0),
            'last_success': _ts('last_success'),
            'last_failure': _ts('last_failure'),
            'last_error': data.get('last_error', ''),
        }


# ── Registry ──────────────────────────────────────────────────────────────────

_registry = {}

BREAKER_SETTINGS = {
    'dispatch': {'failure_threshold': 5, 'reset_timeout': 120},
    'slack': {'failure_threshold': 3, 'reset_timeout': 300},
}


def init_breakers(redis_client):
    """Register one breaker per outbound collaborator."""
    for name, settings in BREAKER_SETTINGS.items():
        _registry[name] = CircuitBreaker(name, redis_client, **settings)
    return dict(_registry)


def get_breaker(name, redis_client=None):
    """Named breaker; created on first use against the shared Redis client."""
    if name not in _registry:
        if redis_client is None:
            from leadflow.extensions import redis_client
        _registry[name] = CircuitBreaker(name, redis_client, **BREAKER_SETTINGS.get(name, {}))
    return _registry[name]


def get_all_breakers():
    return dict(_registry)
