"""Sliding-window rate limiter for authentication actions.

Each bucket (``sign_in``, ``sign_up``, ``email_resend``, ``password_reset``,
``phone_resend``) keeps the timestamps of recent attempts in an injected
``AttemptStore``. Counts are always recomputed from the stored list, so
several surfaces sharing one store see each other's attempts.

A bucket key may carry a scope after a colon (``sign_in:alice@example.com``);
the policy is looked up by the part before the colon.
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass

import redis

from identity_hub.config import parse_policy
from identity_hub.errors import RateLimitedError

logger = logging.getLogger(__name__)

SIGN_IN = 'sign_in'
SIGN_UP = 'sign_up'
EMAIL_RESEND = 'email_resend'
PASSWORD_RESET = 'password_reset'
PHONE_RESEND = 'phone_resend'


@dataclass(frozen=True)
class BucketPolicy:
    max_attempts: int
    window_seconds: float


DEFAULT_POLICIES = {
    SIGN_IN: BucketPolicy(5, 15 * 60),
    SIGN_UP: BucketPolicy(3, 60 * 60),
    EMAIL_RESEND: BucketPolicy(5, 60 * 60),
    PASSWORD_RESET: BucketPolicy(3, 24 * 60 * 60),
    PHONE_RESEND: BucketPolicy(5, 60 * 60),
}


def policies_from_config(config):
    """Build bucket policies from an ``AUTH_RATE_LIMITS`` mapping.

    Values are ``"<max_attempts>/<window_seconds>"`` strings; buckets not
    named keep their defaults.
    """
    policies = dict(DEFAULT_POLICIES)
    for bucket, value in (config or {}).items():
        attempts, window = parse_policy(value)
        policies[bucket] = BucketPolicy(attempts, window)
    return policies


# ---------------------------------------------------------------------------
# Attempt stores
# ---------------------------------------------------------------------------

class AttemptStore(ABC):
    """Persistence for attempt timestamps, keyed by bucket."""

    @abstractmethod
    def load(self, key):
        """Return every stored timestamp for ``key``."""

    @abstractmethod
    def add(self, key, timestamp, ttl):
        """Append ``timestamp``; the whole list may expire after ``ttl`` seconds."""

    @abstractmethod
    def discard_before(self, key, cutoff):
        """Drop timestamps at or before ``cutoff``."""

    @abstractmethod
    def clear(self, key):
        """Forget every attempt for ``key``."""

    @abstractmethod
    def keys(self):
        """Return the keys that currently hold attempts."""


class MemoryAttemptStore(AttemptStore):
    """Process-local store, used in tests and as the Redis fallback."""

    def __init__(self):
        self._attempts = defaultdict(list)
        self._lock = threading.Lock()

    def load(self, key):
        with self._lock:
            return list(self._attempts.get(key, ()))

    def add(self, key, timestamp, ttl):
        with self._lock:
            self._attempts[key].append(timestamp)

    def discard_before(self, key, cutoff):
        with self._lock:
            kept = [t for t in self._attempts.get(key, ()) if t > cutoff]
            if kept:
                self._attempts[key] = kept
            else:
                self._attempts.pop(key, None)

    def clear(self, key):
        with self._lock:
            self._attempts.pop(key, None)

    def keys(self):
        with self._lock:
            return list(self._attempts.keys())


class RedisAttemptStore(AttemptStore):
    """Durable store: one sorted set per bucket key, scored by timestamp.

    Redis errors are logged and the call is served from an in-memory
    fallback so authentication keeps working while Redis is down.
    """

    KEY_PREFIX = 'auth:attempts:'

    def __init__(self, client, fallback=None):
        self._redis = client
        self._fallback = fallback or MemoryAttemptStore()

    def _key(self, key):
        return f"{self.KEY_PREFIX}{key}"

    def load(self, key):
        try:
            entries = self._redis.zrangebyscore(self._key(key), '-inf', '+inf', withscores=True)
            return [score for _, score in entries]
        except redis.RedisError as e:
            logger.warning(f"Redis attempt load failed, using fallback: {e}")
            return self._fallback.load(key)

    def add(self, key, timestamp, ttl):
        try:
            pipe = self._redis.pipeline()
            # Unique member so two attempts in the same instant both count
            pipe.zadd(self._key(key), {f"{timestamp}:{uuid.uuid4().hex[:8]}": timestamp})
            pipe.expire(self._key(key), max(1, int(ttl)))
            pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Redis attempt record failed, using fallback: {e}")
            self._fallback.add(key, timestamp, ttl)

    def discard_before(self, key, cutoff):
        try:
            self._redis.zremrangebyscore(self._key(key), 0, cutoff)
        except redis.RedisError as e:
            logger.warning(f"Redis attempt prune failed: {e}")
            self._fallback.discard_before(key, cutoff)

    def clear(self, key):
        try:
            self._redis.delete(self._key(key))
        except redis.RedisError as e:
            logger.warning(f"Redis attempt clear failed: {e}")
        self._fallback.clear(key)

    def keys(self):
        try:
            return [k[len(self.KEY_PREFIX):] for k in self._redis.scan_iter(match=f"{self.KEY_PREFIX}*")]
        except redis.RedisError as e:
            logger.warning(f"Redis key scan failed: {e}")
            return self._fallback.keys()


def create_attempt_store(redis_url=None):
    """Redis-backed store when Redis is reachable, in-memory otherwise."""
    from identity_hub.services.redis_client import get_redis

    client = get_redis(redis_url) if redis_url else None
    if client is None:
        return MemoryAttemptStore()
    return RedisAttemptStore(client)


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """Sliding-window attempt tracker over an ``AttemptStore``."""

    def __init__(self, policies=None, store=None, clock=time.time):
        self.policies = dict(policies or DEFAULT_POLICIES)
        self.store = store or MemoryAttemptStore()
        self.clock = clock

    @classmethod
    def from_config(cls, config, clock=time.time):
        """Limiter using ``AUTH_RATE_LIMITS`` and, when reachable, ``REDIS_URL``."""
        return cls(policies_from_config(config.get('AUTH_RATE_LIMITS')),
                   create_attempt_store(config.get('REDIS_URL')), clock=clock)

    def policy(self, bucket):
        name = bucket.split(':', 1)[0]
        try:
            return self.policies[name]
        except KeyError:
            raise ValueError(f"No rate limit policy for bucket {name!r}")

    def attempts(self, bucket):
        """Timestamps inside the current window, oldest first.

        Stale timestamps found on the way are pruned from the store.
        """
        policy = self.policy(bucket)
        cutoff = self.clock() - policy.window_seconds
        stored = self.store.load(bucket)
        in_window = sorted(t for t in stored if t > cutoff)
        if len(in_window) < len(stored):
            self.store.discard_before(bucket, cutoff)
        return in_window

    def is_limited(self, bucket):
        return len(self.attempts(bucket)) >= self.policy(bucket).max_attempts

    def record_attempt(self, bucket):
        policy = self.policy(bucket)
        self.store.add(bucket, self.clock(), policy.window_seconds)

    def remaining(self, bucket):
        return max(0, self.policy(bucket).max_attempts - len(self.attempts(bucket)))

    def reset_in(self, bucket):
        """Seconds until the oldest in-window attempt ages out (0 when none)."""
        window = self.attempts(bucket)
        if not window:
            return 0.0
        return max(0.0, window[0] + self.policy(bucket).window_seconds - self.clock())

    def reset(self, bucket):
        self.store.clear(bucket)

    def check(self, bucket):
        """Raise RateLimitedError when ``bucket`` is limited."""
        if self.is_limited(bucket):
            reset_in = self.reset_in(bucket)
            logger.info(f"Rate limited on {bucket.split(':', 1)[0]}, resets in {reset_in:.0f}s")
            raise RateLimitedError(reset_in, bucket=bucket)

    def prune(self):
        """Drop stale attempts for every known bucket key."""
        now = self.clock()
        for key in self.store.keys():
            try:
                policy = self.policy(key)
            except ValueError:
                continue
            self.store.discard_before(key, now - policy.window_seconds)

    def start_pruning(self, interval=60.0):
        ticker = PruneTicker(self, interval)
        ticker.start()
        return ticker


class PruneTicker(threading.Thread):
    """Daemon thread that prunes a limiter's store every ``interval`` seconds."""

    def __init__(self, limiter, interval=60.0):
        super().__init__(name='rate-limit-prune', daemon=True)
        self.limiter = limiter
        self.interval = interval
        self._stopped = threading.Event()

    def run(self):
        while not self._stopped.wait(self.interval):
            try:
                self.limiter.prune()
            except Exception as e:
                logger.warning(f"Rate limit prune failed: {e}")

    def stop(self):
        self._stopped.set()
