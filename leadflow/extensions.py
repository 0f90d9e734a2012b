"""
Shared Redis connections.

redis.from_url() does not connect until the first command, so importing this
module is safe while Redis is down.
"""
import redis

from leadflow.config import REDIS_URL

# Circuit breaker hashes (str in, str out)
redis_client = redis.from_url(REDIS_URL, decode_responses=True)

# RQ pickles job payloads and needs raw bytes back
queue_connection = redis.from_url(REDIS_URL)
