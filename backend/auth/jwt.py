"""
JWT helpers for the roll relay.

Two kinds of tokens share the HS256 secret:
- player tokens, presented by player clients when they open the relay
  WebSocket;
- roll markers, stored on every relayed record so local systems can tell an
  externally sourced roll from one a user typed in.
"""

import os
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from pydantic import BaseModel

# JWT Configuration
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 7

PLAYER_SCOPE = "relay:player"
MARKER_SCOPE = "relay:marker"


class TokenData(BaseModel):
    """Token payload data."""
    user_id: str
    username: str


def create_player_token(user_id: str, username: str) -> str:
    """
    Create a JWT for a player client.

    Example:
        token = create_player_token(user.id, user.username)
        ws://host/api/relay/ws?token={token}
    """
    expire = datetime.utcnow() + timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS)

    payload = {
        "sub": user_id,  # Subject (user ID)
        "username": username,
        "scope": PLAYER_SCOPE,
        "exp": expire,
        "iat": datetime.utcnow(),  # Issued at
    }

    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def verify_player_token(token: str) -> Optional[TokenData]:
    """Return TokenData for a valid player token, None otherwise."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None

    if payload.get("scope") != PLAYER_SCOPE or payload.get("sub") is None:
        return None

    return TokenData(user_id=payload["sub"], username=payload.get("username") or payload["sub"])


def sign_roll_marker(claims: Dict[str, Any]) -> str:
    """Sign the origin claims of a relayed record (no expiry: records are permanent)."""
    payload = {**claims, "scope": MARKER_SCOPE}
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def verify_roll_marker(token: str) -> Optional[Dict[str, Any]]:
    """Return the signed claims of a roll marker, None when forged or malformed."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None

    if payload.get("scope") != MARKER_SCOPE:
        return None
    payload.pop("scope", None)
    return payload
