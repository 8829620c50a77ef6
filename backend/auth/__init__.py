"""
Authentication module for the roll relay.

Provides player tokens and signed origin markers for relayed records.
"""

from .jwt import (
    create_player_token,
    verify_player_token,
    sign_roll_marker,
    verify_roll_marker,
    TokenData,
)

__all__ = [
    'create_player_token',
    'verify_player_token',
    'sign_roll_marker',
    'verify_roll_marker',
    'TokenData',
]
