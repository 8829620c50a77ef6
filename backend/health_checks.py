# backend/health_checks.py

from sqlalchemy import text
import os, time
from backend.db import engine as default_engine

def check_database(engine=None):
    try:
        with (engine or default_engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception as e:
        return f"error: {str(e)}"

def check_env(required=None):
    # Missing relay credentials are reported, not treated as a failure
    if required is None:
        required = ["RELAY_CAMPAIGN_ID", "RELAY_USER_ID", "RELAY_CREDENTIAL"]
    missing = [var for var in required if not os.getenv(var)]
    return "ok" if not missing else {"missing": missing}

def check_relay(relay):
    if relay is None or not relay.running:
        return {"status": "stopped"}
    snapshot = relay.connection.snapshot()
    return {
        "status": snapshot["status"],
        "reconnect_attempts": snapshot["reconnect_attempts"],
        "authorized": snapshot["authorized"],
    }

def get_app_metadata(start_time):
    uptime = int(time.time() - start_time)
    return {
        "status": "running",
        "version": os.getenv("APP_VERSION", "dev"),
        "uptime": f"{uptime}s"
    }
