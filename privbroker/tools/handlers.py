"""
MCP tool definitions for the privilege broker.

Analytics: one JSON line per tool call in ~/.privbroker/analytics.jsonl
"""
from typing import Optional

from mcp.server.fastmcp import FastMCP

from ..core.manager import BrokerManager
from ..utils import analytics

# Global broker instance
_manager = BrokerManager()


def _filter_output(result: str, max_lines: Optional[int] = None, grep: Optional[str] = None) -> str:
    """Keep the header, filter and tail-limit what follows OUTPUT:."""
    if not max_lines and not grep:
        return result

    header, sep, output = result.partition("OUTPUT:\n")
    if not sep:
        return result
    lines = output.split("\n")
    original_count = len(lines)

    if grep:
        lines = [line for line in lines if grep in line]

    notes = []
    if grep:
        notes.append(f"GREP: '{grep}' ({len(lines)} matches)")
    if max_lines and len(lines) > max_lines:
        lines = lines[-max_lines:]
        notes.append(f"TRUNCATED: {len(lines)}/{original_count} lines (tail)")

    return header + "".join(f"{note}\n" for note in notes) + sep + "\n".join(lines)


def _backend_of(result: str) -> str:
    for line in result.split("\n"):
        if line.startswith("Backend: ") or line.startswith("Active backend: "):
            return line.split(": ", 1)[1]
    return "none"


def register_tools(mcp: FastMCP):
    """Register all MCP tools with the server."""

    # ==================== TOOL 1: elevation_status ====================
    @mcp.tool()
    async def elevation_status() -> str:
        """
        Report which elevation mechanism is usable on this device.

        Returns:
        - STATUS: SU / SHIZUKU_RUNNING / DHIZUKU when something works
        - STATUS: SHIZUKU_NOT_RUNNING / SHIZUKU_NOT_INSTALLED / SHIZUKU_PERMISSION_NEEDED / NONE
          with an Action line describing the fix
        - The active backend and the selection order
        """
        result = await _manager.elevation_status()
        analytics.log_event("elevation_status", ok="STATUS: NONE" not in result, backend=_backend_of(result))
        return result

    # ==================== TOOL 2: app_action ====================
    @mcp.tool()
    async def app_action(action: str, package: str) -> str:
        """
        Run a privileged operation on one app through the best available backend.

        Args:
            action: force_stop, clear_cache, disable, enable, uninstall,
                    reinstall (root only, records Play Store as installer),
                    cleanup (force stop + clear cache), paths (root only, APK paths)
            package: Package name, e.g. "com.example.app"

        Returns:
        - STATUS: SUCCESS / FAILED / NO_ELEVATION / VERIFICATION_FAILED / UNSUPPORTED
        - Backend that handled it, Reason and Action on failure

        VERIFICATION_FAILED on disable/enable means the call went through but the
        package state did not change (usually a protected system package).
        """
        result = await _manager.app_action(action, package)
        analytics.log_event("app_action", ok=result.startswith("STATUS: SUCCESS"),
                            backend=_backend_of(result), action=action)
        return result

    # ==================== TOOL 3: install_package ====================
    @mcp.tool()
    async def install_package(path: str, mode: str = None, confirm: bool = True) -> str:
        """
        Install an APK or an .apks/.xapk bundle from a path on the device.

        Args:
            path: Artifact path
            mode: root, shizuku, dhizuku or normal (default: best available)
            confirm: False only parses and reports update/downgrade info

        Downgrades are refused in normal mode. The final result may arrive later:
        poll install_status().
        """
        result = await _manager.install(path, mode, confirm)
        analytics.log_event("install_package", ok="STATUS: ERROR" not in result, mode=mode or "auto")
        return result

    # ==================== TOOL 4: install_status ====================
    @mcp.tool()
    def install_status() -> str:
        """
        Current state of the install session: IDLE, PARSING, READYTOINSTALL,
        INSTALLING (with progress), USERCONFIRMATIONREQUIRED, SUCCESS or ERROR.
        """
        result = _manager.install_status()
        analytics.log_event("install_status", ok="STATUS: ERROR" not in result)
        return result

    # ==================== TOOL 5: reboot_device ====================
    @mcp.tool()
    async def reboot_device(reason: str = "") -> str:
        """
        Reboot the device. Root only.

        Args:
            reason: Optional reboot target such as "recovery" or "bootloader"
        """
        result = await _manager.reboot(reason)
        analytics.log_event("reboot_device", ok=result.startswith("STATUS: SUCCESS"), backend=_backend_of(result))
        return result

    # ==================== TOOL 6: cache_size ====================
    @mcp.tool()
    async def cache_size(package: str = None) -> str:
        """
        Cache size of one app, or of all apps when package is omitted (root only).

        Advisory: a package whose size cannot be read reports 0 B.
        """
        result = await _manager.cache_size(package)
        analytics.log_event("cache_size", ok=result.startswith("STATUS: SUCCESS"))
        return result

    # ==================== TOOL 7: run_privileged ====================
    @mcp.tool()
    async def run_privileged(command: str, max_lines: int = None, grep: str = None) -> str:
        """
        Run a raw shell command through the active backend (root shell, or
        Shizuku / Dhizuku newProcess).

        Args:
            command: Shell command, passed as-is. Quote untrusted parts yourself.
            max_lines: Keep only the last N output lines
            grep: Keep only output lines containing this string

        Returns:
        - STATUS: SUCCESS / COMMAND_FAILED
        - EXIT_CODE (-1 when no backend could run it)
        - OUTPUT
        """
        result = await _manager.execute(command)
        filtered = _filter_output(result, max_lines, grep)
        analytics.log_event("run_privileged", ok="EXIT_CODE: 0" in result,
                            truncated=1 if "TRUNCATED" in filtered else 0)
        return filtered
