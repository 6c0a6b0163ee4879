"""Shared utilities for the identity hub.

This package contains helpers shared across route modules.
"""

from identity_hub.utils.auth import (
    identity_token_required,
    get_bearer_token,
)

__all__ = [
    'identity_token_required',
    'get_bearer_token',
]
