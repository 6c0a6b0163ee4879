"""Sign-in provider discovery with a short-lived cache."""

import logging
import time

from identity_hub.client.cancellation import Cancelled

logger = logging.getLogger(__name__)

CACHE_TTL = 5 * 60


class ProviderDiscovery:
    """Find which sign-in methods an email is registered with.

    Asks the identity provider first and the identity hub's ``check-email``
    endpoint when the provider has nothing to say. Failures never
    propagate; an unknown email and a failed lookup both yield ``[]``.
    """

    def __init__(self, identity, api=None, ttl=CACHE_TTL, clock=time.time):
        self.identity = identity
        self.api = api
        self.ttl = ttl
        self.clock = clock
        self._cache = {}

    def discover(self, email, cancel_token=None):
        key = (email or '').strip().lower()
        if not key:
            return []

        cached = self._cache.get(key)
        if cached and cached[1] > self.clock():
            return list(cached[0])

        providers = []
        try:
            providers = self.identity.fetch_providers(key, cancel_token=cancel_token)
        except Cancelled:
            raise
        except Exception as e:
            logger.warning(f"Provider lookup failed, trying server fallback: {e}")

        if not providers and self.api is not None:
            try:
                providers = self.api.check_email(key, cancel_token=cancel_token)
            except Cancelled:
                raise
            except Exception as e:
                logger.warning(f"Server provider check failed: {e}")
                return []

        providers = list(dict.fromkeys(providers or []))
        self._cache[key] = (providers, self.clock() + self.ttl)
        return list(providers)

    def clear(self, email=None):
        if email is None:
            self._cache.clear()
        else:
            self._cache.pop(email.strip().lower(), None)

    def cleanup(self):
        """Drop expired cache entries."""
        now = self.clock()
        for key in [k for k, (_, expires) in self._cache.items() if expires <= now]:
            del self._cache[key]
