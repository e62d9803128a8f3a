"""
Port Probe - required-port availability and conflict remediation

Checks that the stack's fixed local TCP ports are free, identifies the
processes holding them, and frees them after the user confirms.
"""

import asyncio
import logging
import os
import socket

import psutil

from trh_launcher.core.config import PortRequirement, Settings, get_settings
from trh_launcher.core.exceptions import ConflictError, LauncherError
from trh_launcher.ports.models import UNKNOWN_PROCESS, PortCheckResult, PortConflict
from trh_launcher.runtime.process import run_command

logger = logging.getLogger(__name__)

LOOKUP_TIMEOUT = 5.0

# Processes that publish container ports on behalf of the runtime
RUNTIME_PROCESS_NAMES = {
    "docker-proxy",
    "com.docker.backend",
    "com.docker.vpnkit",
    "vpnkit",
    "dockerd",
    "wslrelay.exe",
    "com.docker.backend.exe",
}


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """
    Check if a port is available by binding it and releasing immediately.

    A direct test, so it works without any process-listing tool.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
            return True
    except OSError:
        return False


def is_runtime_process(process_name: str) -> bool:
    """True for the runtime's own port publishers (they belong to the managed stack)"""
    return process_name.lower() in RUNTIME_PROCESS_NAMES


class PortProbe:
    """
    Probes the stack's required ports.

    Port owners are resolved with lsof first, then psutil; process names
    with psutil first, then ps. A failed lookup still yields a conflict
    entry with placeholder values so no blocked port is dropped.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @property
    def requirements(self) -> list[PortRequirement]:
        return list(self.settings.required_ports)

    def purpose_of(self, port: int) -> str:
        for requirement in self.requirements:
            if requirement.port == port:
                return requirement.purpose
        return ""

    def check_required(self) -> PortCheckResult:
        """
        Bind-test every required port.

        Returns:
            PortCheckResult with available and blocked_ports
        """
        blocked = [r.port for r in self.requirements if not is_port_free(r.port)]
        if blocked:
            logger.info(f"Ports in use: {blocked}")
        return PortCheckResult(available=not blocked, blocked_ports=blocked)

    async def find_conflicts(self) -> PortCheckResult:
        """
        Resolve the owning processes of every blocked port.

        available is False only when a conflict is held by a process outside
        the managed stack; runtime-owned ports are reported but do not block.
        """
        check = self.check_required()
        if check.available:
            return check

        conflicts: list[PortConflict] = []
        for port in check.blocked_ports:
            pids = await self.find_pids(port)
            if not pids:
                logger.warning(f"Port {port} is in use but its owner could not be determined")
                conflicts.append(PortConflict(port=port))
                continue
            for pid in pids:
                name = await self.process_name(pid)
                conflicts.append(PortConflict(port=port, pid=pid, process_name=name))

        external = [c for c in conflicts if not is_runtime_process(c.process_name)]
        for conflict in conflicts:
            logger.info(
                f"Port {conflict.port} ({self.purpose_of(conflict.port)}) held by "
                f"{conflict.process_name} (pid {conflict.pid or '?'})"
            )
        return PortCheckResult(
            available=not external,
            blocked_ports=check.blocked_ports,
            conflicts=conflicts,
        )

    async def find_pids(self, port: int) -> list[int]:
        """Find PIDs listening on a port. Tries lsof first, falls back to psutil."""
        try:
            result = await run_command(
                ["lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN"],
                timeout=LOOKUP_TIMEOUT,
                log_output=False,
            )
            if result.ok and result.stdout.strip():
                pids = []
                for token in result.stdout.split():
                    if token.isdigit() and int(token) not in pids:
                        pids.append(int(token))
                if pids:
                    return pids
        except (OSError, LauncherError) as e:
            logger.debug(f"lsof lookup for port {port} failed: {e}")

        try:
            return sorted(
                {
                    conn.pid
                    for conn in psutil.net_connections(kind="tcp")
                    if conn.laddr
                    and conn.laddr.port == port
                    and conn.status == psutil.CONN_LISTEN
                    and conn.pid
                }
            )
        except (psutil.AccessDenied, psutil.Error, OSError) as e:
            logger.debug(f"psutil lookup for port {port} failed: {e}")
            return []

    async def process_name(self, pid: int) -> str:
        """Display name for a PID. Tries psutil first, falls back to ps."""
        try:
            return psutil.Process(pid).name()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            pass

        try:
            result = await run_command(
                ["ps", "-p", str(pid), "-o", "comm="], timeout=LOOKUP_TIMEOUT, log_output=False
            )
            name = result.stdout.strip()
            if result.ok and name:
                return os.path.basename(name)
        except (OSError, LauncherError) as e:
            logger.debug(f"ps lookup for pid {pid} failed: {e}")
        return UNKNOWN_PROCESS

    async def free_ports(self, ports: list[int]) -> None:
        """
        Gracefully terminate the processes holding the given ports.

        Sends SIGTERM only, waits the settle interval, then re-probes.
        Another process may rebind a port during the settle window; that is
        reported like any other port that is still in use.

        Raises:
            ConflictError: If any port is still bound afterwards
        """
        own_pid = os.getpid()
        for port in ports:
            for pid in await self.find_pids(port):
                if pid == own_pid:
                    continue
                try:
                    proc = psutil.Process(pid)
                    name = proc.name()
                    if is_runtime_process(name):
                        logger.info(f"Leaving runtime process {name} (pid {pid}) on port {port}")
                        continue
                    logger.info(f"Sending SIGTERM to {name} (pid {pid}) on port {port}")
                    proc.terminate()
                except psutil.NoSuchProcess:
                    continue
                except psutil.AccessDenied:
                    logger.warning(f"Not permitted to terminate pid {pid} on port {port}")

        await asyncio.sleep(self.settings.port_settle_interval)

        still_bound = [port for port in ports if not is_port_free(port)]
        if still_bound:
            raise ConflictError(
                f"Ports still in use: {', '.join(str(p) for p in still_bound)}. Free them manually",
                ports=still_bound,
            )
        logger.info(f"Ports freed: {ports}")
