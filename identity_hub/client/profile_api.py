"""HTTP client for the identity hub API."""

import logging

import requests

from identity_hub.client.cancellation import Cancelled

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10


class ProfileApiError(Exception):
    """Non-success response from the identity hub API."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class ProfileApiClient:
    """Thin wrapper over the ``/api/auth`` and ``/api/users`` routes."""

    def __init__(self, base_url, session=None):
        self.base_url = base_url.rstrip('/')
        self.http = session or requests.Session()

    def _request(self, method, path, id_token=None, cancel_token=None, **kwargs):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        headers = kwargs.pop('headers', {})
        if id_token:
            headers['Authorization'] = f'Bearer {id_token}'

        try:
            response = self.http.request(method, f"{self.base_url}{path}", headers=headers,
                                         timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            raise ProfileApiError(f'Network error: {e}')

        if cancel_token is not None and cancel_token.cancelled:
            raise Cancelled()

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            raise ProfileApiError(data.get('error') or f'HTTP {response.status_code}', status=response.status_code)
        return data

    def resolve_username(self, username, cancel_token=None):
        """Return the email for ``username``, or None if no account uses it."""
        try:
            data = self._request('POST', '/api/auth/username-to-email',
                                 json={'username': username}, cancel_token=cancel_token)
        except ProfileApiError as e:
            if e.status == 404:
                return None
            raise
        return data.get('email')

    def check_email(self, email, cancel_token=None):
        data = self._request('GET', '/api/auth/check-email', params={'email': email}, cancel_token=cancel_token)
        return list(data.get('providers') or [])

    def check_username(self, username, cancel_token=None):
        data = self._request('POST', '/api/auth/check-username',
                             json={'username': username}, cancel_token=cancel_token)
        return bool(data.get('available'))

    def upsert_profile(self, id_token, payload, cancel_token=None):
        data = self._request('POST', '/api/users/upsert', id_token=id_token, json=payload, cancel_token=cancel_token)
        return data.get('user')

    def fetch_profile(self, id_token, cancel_token=None):
        data = self._request('GET', '/api/users/profile', id_token=id_token, cancel_token=cancel_token)
        return data.get('user')

    def create_session(self, id_token, cancel_token=None):
        return self._request('POST', '/api/auth/session', id_token=id_token, cancel_token=cancel_token)
