"""Authentication models shared across API projects."""

from dataclasses import dataclass


@dataclass
class AuthenticatedUser:
    """Caller identity established upstream and passed in a request header."""
    user_id: str
    is_anonymous: bool = False
