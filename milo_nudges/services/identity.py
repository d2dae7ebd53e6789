"""
Identity Provider

Supplies the signed-in user's id. Having no user is a normal condition the
repository reports as AuthenticationError.
"""

from abc import ABC, abstractmethod
from typing import Optional


class IdentityProvider(ABC):

    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        """Id of the signed-in user, or None."""


class StaticIdentityProvider(IdentityProvider):
    """Holds the user id set by the host application."""

    def __init__(self, user_id: Optional[str] = None):
        self._user_id = user_id

    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        self._user_id = user_id

    def sign_out(self) -> None:
        self._user_id = None
