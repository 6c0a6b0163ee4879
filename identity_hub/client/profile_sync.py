"""Best-effort profile persistence with a connectivity cooldown."""

import logging
import threading
import time

from identity_hub.client.cancellation import Cancelled
from identity_hub.errors import ConnectivityCooldownError, PersistenceError

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 3
COOLDOWN_SECONDS = 60.0


class ProfileSync:
    """Push partial profile updates to the server.

    After ``max_failures`` consecutive failures further saves are refused
    for ``cooldown`` seconds with ``ConnectivityCooldownError`` instead of
    hammering a server that is unreachable. One success resets the count.
    """

    def __init__(self, api, max_failures=MAX_CONSECUTIVE_FAILURES, cooldown=COOLDOWN_SECONDS, clock=time.time):
        self.api = api
        self.max_failures = max_failures
        self.cooldown = cooldown
        self.clock = clock
        self._failures = 0
        self._cooldown_until = None
        self._lock = threading.Lock()

    @property
    def consecutive_failures(self):
        return self._failures

    def cooldown_remaining(self):
        if self._cooldown_until is None:
            return 0.0
        return max(0.0, self._cooldown_until - self.clock())

    def save(self, id_token, payload, cancel_token=None):
        """Upsert ``payload``; returns the flattened profile.

        Raises:
            ConnectivityCooldownError: While the cooldown is active
            PersistenceError: If the save failed
        """
        remaining = self.cooldown_remaining()
        if remaining > 0:
            raise ConnectivityCooldownError(remaining)

        try:
            user = self.api.upsert_profile(id_token, payload, cancel_token=cancel_token)
        except Cancelled:
            raise
        except Exception as e:
            logger.warning(f"Profile save failed ({self._failures + 1} in a row): {e}")
            self._record_failure()
            raise PersistenceError(detail=str(e))

        with self._lock:
            self._failures = 0
            self._cooldown_until = None
        return user

    def _record_failure(self):
        with self._lock:
            self._failures += 1
            if self._failures >= self.max_failures:
                self._cooldown_until = self.clock() + self.cooldown
                self._failures = 0
                logger.warning(f"Profile saves suspended for {self.cooldown:.0f}s after repeated failures")
