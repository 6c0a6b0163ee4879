"""
Tests for sign-in provider discovery.
"""

import pytest

from identity_hub.client.provider_discovery import ProviderDiscovery
from identity_hub.errors import ProviderError


@pytest.fixture
def discovery(identity, profile_api, clock):
    return ProviderDiscovery(identity, profile_api, clock=clock)


class TestProviderDiscovery:

    def test_identity_provider_answer_used(self, discovery, identity):
        identity.add_account('alice@example.com', providers=('password', 'google.com'))

        assert discovery.discover('Alice@Example.com') == ['password', 'google.com']

    def test_server_fallback_when_provider_empty(self, discovery, profile_api):
        profile_api.providers['bob@example.com'] = ['google.com']

        assert discovery.discover('bob@example.com') == ['google.com']

    def test_server_fallback_when_provider_fails(self, discovery, identity, profile_api):
        identity.failures['fetch_providers'] = ProviderError.from_code('network-request-failed')
        profile_api.providers['bob@example.com'] = ['password']

        assert discovery.discover('bob@example.com') == ['password']

    def test_unknown_email_is_empty(self, discovery):
        assert discovery.discover('nobody@example.com') == []
        assert discovery.discover('') == []

    def test_results_cached_until_ttl(self, discovery, identity, clock):
        identity.add_account('alice@example.com')
        discovery.discover('alice@example.com')
        discovery.discover('alice@example.com')

        assert len(identity.called('fetch_providers')) == 1

        clock.advance(301)
        discovery.discover('alice@example.com')
        assert len(identity.called('fetch_providers')) == 2

    def test_failed_server_lookup_not_cached(self, discovery, profile_api, monkeypatch):
        def fail(email, cancel_token=None):
            raise ConnectionError('down')

        monkeypatch.setattr(profile_api, 'check_email', fail)
        assert discovery.discover('carol@example.com') == []

        monkeypatch.undo()
        profile_api.providers['carol@example.com'] = ['password']
        assert discovery.discover('carol@example.com') == ['password']

    def test_clear_and_cleanup(self, discovery, identity, clock):
        identity.add_account('alice@example.com')
        discovery.discover('alice@example.com')
        discovery.clear('ALICE@example.com')
        discovery.discover('alice@example.com')
        assert len(identity.called('fetch_providers')) == 2

        clock.advance(301)
        discovery.cleanup()
        assert discovery._cache == {}
