"""Shared authentication utilities for API projects."""

from .dependencies import get_current_user
from .models import AuthenticatedUser

__all__ = [
    "get_current_user",
    "AuthenticatedUser",
]
