"""
Configuration and constants for the privilege broker.
"""
import os
import shlex
import shutil
from pathlib import Path

from .models import BackendCapability

SU_BINARY = os.environ.get("PRIVBROKER_SU") or shutil.which("su") or "su"

# argv of the long-lived privileged shell
SHELL_COMMAND = (
    shlex.split(os.environ["PRIVBROKER_SHELL"])
    if os.environ.get("PRIVBROKER_SHELL")
    else [SU_BINARY, "--mount-master"]
)

# How long the shell may take to answer the startup probe (su may wait on a grant dialog)
SHELL_START_TIMEOUT = float(os.environ.get("PRIVBROKER_SHELL_START_TIMEOUT", "20"))

# How long each read waits for new output before checking the other stream (seconds)
SHELL_POLL_INTERVAL = 0.05

# Max seconds a single job may run before the shell is considered dead (None = no limit)
JOB_TIMEOUT = (
    float(os.environ["PRIVBROKER_JOB_TIMEOUT"])
    if os.environ.get("PRIVBROKER_JOB_TIMEOUT")
    else None
)

# Worker threads for blocking binder / subprocess calls
IO_WORKERS = 4


def _parse_backend_order(raw: str):
    order = []
    for name in raw.split(","):
        name = name.strip().upper()
        if name:
            order.append(BackendCapability[name])
    return tuple(order)


# Root first, then Shizuku, then Dhizuku
DEFAULT_BACKEND_ORDER = (
    BackendCapability.ROOT,
    BackendCapability.SHIZUKU,
    BackendCapability.DHIZUKU,
)
BACKEND_ORDER = (
    _parse_backend_order(os.environ["PRIVBROKER_BACKEND_ORDER"])
    if os.environ.get("PRIVBROKER_BACKEND_ORDER")
    else DEFAULT_BACKEND_ORDER
)

# Android API level of the target, drives reflective dispatch
API_LEVEL = int(os.environ.get("PRIVBROKER_API_LEVEL", "34"))

# Android P (28) is the first level that needs the hidden API bypass
HIDDEN_API_MIN_LEVEL = 28

USER_ID = int(os.environ.get("PRIVBROKER_USER_ID", "0"))
CALLER_PACKAGE = os.environ.get("PRIVBROKER_CALLER_PACKAGE", "com.android.shell")
SHIZUKU_REQUEST_CODE = 1001

# Optional "module:attribute" factories for externally provided bridges
SHIZUKU_BRIDGE = os.environ.get("PRIVBROKER_SHIZUKU_BRIDGE", "")
DHIZUKU_BRIDGE = os.environ.get("PRIVBROKER_DHIZUKU_BRIDGE", "")
INSTALLER_BRIDGE = os.environ.get("PRIVBROKER_INSTALLER_BRIDGE", "")

# Tool usage log (JSONL)
ANALYTICS_DIR = Path(os.environ.get("PRIVBROKER_ANALYTICS_DIR", str(Path.home() / ".privbroker")))
ANALYTICS_FILE = ANALYTICS_DIR / "analytics.jsonl"

LOG_LEVEL = os.environ.get("PRIVBROKER_LOG_LEVEL", "WARNING")

# ============= Android wire constants =============

# android.content.pm.PackageInstaller
ACTION_INSTALL_STATUS = "privbroker.intent.action.INSTALL_STATUS"
EXTRA_STATUS = "android.content.pm.extra.STATUS"
EXTRA_STATUS_MESSAGE = "android.content.pm.extra.STATUS_MESSAGE"
EXTRA_SESSION_ID = "android.content.pm.extra.SESSION_ID"
EXTRA_INTENT = "android.intent.extra.INTENT"

STATUS_PENDING_USER_ACTION = -1
STATUS_SUCCESS = 0
STATUS_FAILURE = 1
STATUS_FAILURE_BLOCKED = 2
STATUS_FAILURE_ABORTED = 3
STATUS_FAILURE_INVALID = 4
STATUS_FAILURE_CONFLICT = 5
STATUS_FAILURE_STORAGE = 6
STATUS_FAILURE_INCOMPATIBLE = 7
STATUS_FAILURE_TIMEOUT = 8

# android.content.pm.PackageManager component enabled states
COMPONENT_ENABLED_STATE_DEFAULT = 0
COMPONENT_ENABLED_STATE_ENABLED = 1
COMPONENT_ENABLED_STATE_DISABLED = 2
COMPONENT_ENABLED_STATE_DISABLED_USER = 3
COMPONENT_ENABLED_STATE_DISABLED_UNTIL_USED = 4

DISABLED_STATES = (
    COMPONENT_ENABLED_STATE_DISABLED,
    COMPONENT_ENABLED_STATE_DISABLED_USER,
    COMPONENT_ENABLED_STATE_DISABLED_UNTIL_USED,
)

# Installer package used to make reinstalled apps look Play-installed
PLAY_STORE_PACKAGE = "com.android.vending"

# Package paths probed by the cache scanner
CACHE_SCAN_COMMAND = "du -k -s /data/data/*/cache /sdcard/Android/data/*/cache 2>/dev/null"
