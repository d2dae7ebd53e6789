"""
Services Module
"""

from milo_nudges.services.nudge_repository import NudgeRepository
from milo_nudges.services.error_handler import NudgeErrorHandler
from milo_nudges.services.identity import IdentityProvider, StaticIdentityProvider

__all__ = [
    "NudgeRepository",
    "NudgeErrorHandler",
    "IdentityProvider",
    "StaticIdentityProvider",
]
