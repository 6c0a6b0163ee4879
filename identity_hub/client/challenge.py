"""Challenge-verifier providers.

A challenge token (proof of humanity) must be obtained before every phone
code dispatch. Two providers are tried in order:

* ``EnterpriseChallengeProvider`` wraps an invisible SDK that returns a
  token synchronously when it is present.
* ``WidgetChallengeProvider`` owns a widget that is rendered once per
  surface, awaited with a timeout and recreated when it reports itself
  destroyed.

Tokens are single-use and never cached.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import TimeoutError as FutureTimeoutError

from identity_hub.client.cancellation import Cancelled
from identity_hub.errors import ChallengeError

logger = logging.getLogger(__name__)

DEFAULT_RENDER_TIMEOUT = 20.0


class WidgetDestroyedError(Exception):
    """The widget instance is no longer usable and must be recreated."""


class PopupBlockedError(Exception):
    """The browser refused to open the challenge popup."""


class ChallengeProvider(ABC):

    @abstractmethod
    def acquire_token(self, action, cancel_token=None):
        """Return a fresh single-use challenge token for ``action``.

        Raises:
            ChallengeError: If no token could be obtained
            Cancelled: If ``cancel_token`` was cancelled meanwhile
        """

    def dispose(self):
        """Release any resources held by the provider."""


class EnterpriseChallengeProvider(ChallengeProvider):
    """Invisible SDK path; no UI, token returned directly."""

    def __init__(self, sdk, site_key):
        self.sdk = sdk
        self.site_key = site_key

    @property
    def available(self):
        # Absence of the SDK is a normal condition, not an error
        execute = getattr(self.sdk, 'execute', None) if self.sdk is not None else None
        return bool(self.site_key) and callable(execute)

    def acquire_token(self, action, cancel_token=None):
        if not self.available:
            raise ChallengeError(ChallengeError.UNAVAILABLE, detail='enterprise SDK not loaded')
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        token = self.sdk.execute(self.site_key, {'action': action})

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if not token:
            raise ChallengeError(ChallengeError.UNKNOWN, detail='enterprise SDK returned empty token')
        return token


class ChallengeWidget(ABC):
    """A rendered challenge widget bound to one UI surface."""

    @abstractmethod
    def render(self):
        """Start rendering; return a Future that resolves once the widget is ready."""

    @abstractmethod
    def execute(self, action):
        """Run the challenge and return its token.

        Raises:
            WidgetDestroyedError: If the widget instance was destroyed
            PopupBlockedError: If the challenge popup was blocked
        """

    @abstractmethod
    def clear(self):
        """Destroy the widget."""


class WidgetChallengeProvider(ChallengeProvider):
    """Widget path with an explicit acquire/dispose lifecycle.

    At most one widget exists at a time. A widget that fails to render
    within ``render_timeout`` seconds is torn down so a later call can
    create a new one.
    """

    def __init__(self, widget_factory, render_timeout=DEFAULT_RENDER_TIMEOUT):
        self.widget_factory = widget_factory
        self.render_timeout = render_timeout
        self._widget = None

    @property
    def widget(self):
        return self._widget

    def acquire(self):
        """Return the ready widget, creating and rendering it if needed."""
        if self._widget is not None:
            return self._widget

        widget = self.widget_factory()
        try:
            widget.render().result(timeout=self.render_timeout)
        except FutureTimeoutError:
            self._teardown(widget)
            logger.warning(f"Challenge widget did not render within {self.render_timeout}s")
            raise ChallengeError(ChallengeError.RENDER_TIMEOUT)
        except PopupBlockedError as e:
            self._teardown(widget)
            raise ChallengeError(ChallengeError.POPUP_BLOCKED, detail=str(e))
        except Exception as e:
            self._teardown(widget)
            logger.warning(f"Challenge widget render failed: {e}")
            raise ChallengeError(ChallengeError.UNKNOWN, detail=str(e))

        self._widget = widget
        return widget

    def renew(self):
        self.dispose()
        return self.acquire()

    def dispose(self):
        widget, self._widget = self._widget, None
        if widget is not None:
            self._teardown(widget)

    def acquire_token(self, action, cancel_token=None):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        widget = self.acquire()
        try:
            try:
                token = widget.execute(action)
            except WidgetDestroyedError:
                logger.info("Challenge widget destroyed, recreating")
                token = self.renew().execute(action)
        except WidgetDestroyedError as e:
            self.dispose()
            raise ChallengeError(ChallengeError.UNKNOWN, detail=f'widget destroyed twice: {e}')
        except PopupBlockedError as e:
            raise ChallengeError(ChallengeError.POPUP_BLOCKED, detail=str(e))
        except ChallengeError:
            raise
        except Exception as e:
            self.dispose()
            raise ChallengeError(ChallengeError.UNKNOWN, detail=str(e))

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if not token:
            raise ChallengeError(ChallengeError.UNKNOWN, detail='widget returned empty token')
        return token

    @staticmethod
    def _teardown(widget):
        try:
            widget.clear()
        except Exception as e:
            logger.debug(f"Challenge widget clear failed: {e}")


class FallbackChallengeProvider(ChallengeProvider):
    """Try ``primary`` first and fall back to ``secondary`` silently."""

    def __init__(self, primary, secondary):
        self.primary = primary
        self.secondary = secondary

    def acquire_token(self, action, cancel_token=None):
        if self.primary is not None:
            try:
                return self.primary.acquire_token(action, cancel_token)
            except Cancelled:
                raise
            except Exception as e:
                logger.warning(f"Primary challenge provider failed, falling back: {e}")

        if self.secondary is None:
            raise ChallengeError(ChallengeError.UNAVAILABLE)
        return self.secondary.acquire_token(action, cancel_token)

    def dispose(self):
        for provider in (self.primary, self.secondary):
            if provider is not None:
                provider.dispose()


def create_challenge_provider(sdk=None, site_key=None, widget_factory=None,
                              render_timeout=DEFAULT_RENDER_TIMEOUT):
    """Build the provider chain for the capabilities that are present."""
    primary = EnterpriseChallengeProvider(sdk, site_key) if sdk is not None else None
    secondary = WidgetChallengeProvider(widget_factory, render_timeout) if widget_factory else None

    if primary is None and secondary is None:
        raise ValueError('A challenge SDK or a widget factory is required')
    if secondary is None:
        return primary
    if primary is None:
        return secondary
    return FallbackChallengeProvider(primary, secondary)
