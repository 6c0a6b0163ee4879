"""Database models for the identity hub."""

from .profile import UserProfile

__all__ = ['UserProfile']
