# backend/config.py
"""
Relay configuration.

Values come from environment variables (a local `.env` is loaded outside of
containers, same rule as backend/db.py). The ownership preference and the
spell slot switch are read per roll, so changing them at runtime applies to
the next event.
"""

import os
from enum import Enum

from dotenv import load_dotenv
from pydantic import BaseModel, Field

if not os.path.exists("/.dockerenv"):
    load_dotenv()


class RollOwnership(str, Enum):
    """Who should re-create a relayed roll when the owner could."""
    GM = "gm"
    PLAYER = "player"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class RelayConfig(BaseModel):
    base_url: str = "http://localhost:8787"
    campaign_id: str = ""
    user_id: str = ""
    credential: str = ""
    session_token: str = ""

    max_reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_delay: float = Field(default=5.0, gt=0)
    request_timeout: float = Field(default=10.0, gt=0)
    rpc_timeout: float = Field(default=15.0, gt=0)

    roll_ownership: RollOwnership = RollOwnership.GM
    skip_spell_slot_consumption: bool = False
    autoconnect: bool = True

    @property
    def is_valid(self) -> bool:
        """True when every handshake credential is present."""
        return bool(self.campaign_id and self.user_id and self.credential)

    @classmethod
    def from_env(cls) -> "RelayConfig":
        return cls(
            base_url=os.getenv("RELAY_BASE_URL", "http://localhost:8787").strip(),
            campaign_id=os.getenv("RELAY_CAMPAIGN_ID", "").strip(),
            user_id=os.getenv("RELAY_USER_ID", "").strip(),
            credential=os.getenv("RELAY_CREDENTIAL", "").strip(),
            session_token=os.getenv("RELAY_SESSION_TOKEN", "").strip(),
            max_reconnect_attempts=int(os.getenv("RELAY_MAX_RECONNECT_ATTEMPTS", "5")),
            reconnect_delay=float(os.getenv("RELAY_RECONNECT_DELAY", "5.0")),
            request_timeout=float(os.getenv("RELAY_REQUEST_TIMEOUT", "10.0")),
            rpc_timeout=float(os.getenv("RELAY_RPC_TIMEOUT", "15.0")),
            roll_ownership=RollOwnership(os.getenv("RELAY_ROLL_OWNERSHIP", "gm").strip().lower() or "gm"),
            skip_spell_slot_consumption=_env_bool("RELAY_SKIP_SPELL_SLOT", False),
            autoconnect=_env_bool("RELAY_AUTOCONNECT", True),
        )
