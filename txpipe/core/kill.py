# /txpipe/core/kill.py
import os
from datetime import datetime, timezone

from txpipe.core.config import settings
from txpipe.core.errors import KillSwitchActiveError
from txpipe.core.logger import get_logger

log = get_logger(__name__)


def kill_switch_path() -> str:
    return os.path.join(settings.SESSION_DIR, ".kill_switch")


def is_kill_switch_active() -> bool:
    return os.path.exists(kill_switch_path())


def activate_kill_switch(reason: str):
    timestamp = datetime.now(timezone.utc).isoformat()
    content = f"ACTIVATED at {timestamp}\nREASON: {reason}\n"
    os.makedirs(settings.SESSION_DIR, exist_ok=True)
    with open(kill_switch_path(), "w") as f:
        f.write(content)
    log.critical("KILL_SWITCH_ACTIVATED", reason=reason)


def deactivate_kill_switch():
    try:
        os.remove(kill_switch_path())
        log.warning("KILL_SWITCH_DEACTIVATED")
    except FileNotFoundError:
        pass


def check():
    """Raise if submissions are halted."""
    if is_kill_switch_active():
        log.critical("TRANSACTION_BLOCKED_BY_KILL_SWITCH")
        raise KillSwitchActiveError("Kill switch is active. Halting transaction.")
