"""
Runtime Gateway - the single interface to the container runtime

Wraps the Docker CLI for the fixed three-service stack:
- version / daemon checks
- image pull (streamed)
- stack up / down / status
- exec into a running container

Every subprocess failure is converted into a typed LauncherError with a
human explanation; no raw process objects leave this module.
"""

import asyncio
import json
import logging
import re
import time
from pathlib import Path
from typing import Awaitable, Callable

from trh_launcher.core.config import Settings, get_settings
from trh_launcher.core.exceptions import (
    ComposeError,
    ConfigurationError,
    DaemonUnreachableError,
    EnvironmentError,
    LauncherError,
    MissingImageError,
    PortConflictError,
    TransientInfraError,
)
from trh_launcher.core.validation import ContainerCredentials, CredentialValidator
from trh_launcher.runtime.docker import (
    get_daemon_launch_command,
    get_docker_command,
    get_docker_env,
    get_install_url,
)
from trh_launcher.runtime.models import (
    CommandResult,
    ContainerRecord,
    PullEvent,
    StackStatus,
)
from trh_launcher.runtime.process import (
    LineCallback,
    maybe_await,
    run_command,
    stream_command,
)

logger = logging.getLogger(__name__)

PullCallback = Callable[[PullEvent], Awaitable[None] | None]

# "<service> <status text>", e.g. "trh-backend Pulling"
PULL_LINE_PATTERN = re.compile(r"^(\w[-\w]*)\s+(.+)$")

PORT_ERROR_MARKERS = (
    "port is already allocated",
    "address already in use",
    "ports are not available",
)
IMAGE_ERROR_MARKERS = (
    "no such image",
    "pull access denied",
    "manifest unknown",
    "image not found",
)
DAEMON_ERROR_MARKERS = (
    "connection refused",
    "cannot connect to the docker daemon",
    "is the docker daemon running",
)


def classify_compose_failure(output: str, exit_code: int | None) -> LauncherError:
    """
    Map a failed `compose up` to a typed error by inspecting its merged output.

    Args:
        output: Captured stdout and stderr of the failed command
        exit_code: Process exit code

    Returns:
        PortConflictError, MissingImageError, DaemonUnreachableError or ComposeError
    """
    text = (output or "").lower()
    summary = _summarize(output) or f"Docker compose up failed with code {exit_code}"

    if any(marker in text for marker in PORT_ERROR_MARKERS):
        return PortConflictError(f"Port already in use: {summary}")
    if any(marker in text for marker in IMAGE_ERROR_MARKERS):
        return MissingImageError(f"Image not found: {summary}")
    if any(marker in text for marker in DAEMON_ERROR_MARKERS):
        return DaemonUnreachableError(f"Docker daemon unreachable: {summary}")
    return ComposeError(
        f"Docker compose up failed with code {exit_code}: {summary}",
        exit_code=exit_code,
        stderr=output,
    )


def _summarize(output: str, limit: int = 200) -> str:
    """Last non-empty line of command output, truncated"""
    lines = [line.strip() for line in (output or "").splitlines() if line.strip()]
    if not lines:
        return ""
    return lines[-1][:limit]


def parse_ps_output(output: str) -> tuple[list[ContainerRecord], int]:
    """
    Parse `docker compose ps --format json` output.

    Newer compose releases print one JSON object per line, older ones a
    single JSON array. Lines that fail to parse are skipped.

    Returns:
        Tuple of (records, number of lines that failed to parse)
    """
    records: list[ContainerRecord] = []
    failures = 0

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            failures += 1
            continue

        items = parsed if isinstance(parsed, list) else [parsed]
        for item in items:
            if isinstance(item, dict):
                records.append(ContainerRecord.from_json(item))
            else:
                failures += 1

    return records, failures


class RuntimeGateway:
    """
    Sole interface to the container runtime binary.

    Holds no mutable state of its own; in-flight subprocesses are tracked
    by the shared ProcessRegistry.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    # ==========================================================================
    # Invocation helpers
    # ==========================================================================

    def compose_path(self) -> Path:
        """
        Resolve the compose definition.

        Raises:
            ConfigurationError: If the file does not exist
        """
        path = Path(self.settings.compose_file)
        if not path.exists():
            raise ConfigurationError(
                f"Docker Compose file not found: {path}",
                recovery_hint="Reinstall the launcher or set TRH_COMPOSE_FILE",
            )
        return path

    def _compose(self, *args: str) -> list[str]:
        return get_docker_command() + ["compose", "-f", str(self.compose_path()), *args]

    async def _run(
        self, args: list[str], timeout: float, env: dict[str, str] | None = None
    ) -> CommandResult:
        try:
            return await run_command(args, timeout=timeout, env=get_docker_env(env))
        except FileNotFoundError:
            raise EnvironmentError(
                "Docker executable not found",
                recovery_hint=f"Install Docker Desktop: {self.install_url()}",
            )
        except PermissionError as e:
            raise EnvironmentError(
                f"Permission denied running Docker: {e}",
                recovery_hint="Add your user to the docker group",
            )

    async def _stream(
        self,
        args: list[str],
        on_line: LineCallback | None,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        try:
            return await stream_command(args, on_line, timeout=timeout, env=get_docker_env(env))
        except FileNotFoundError:
            raise EnvironmentError(
                "Docker executable not found",
                recovery_hint=f"Install Docker Desktop: {self.install_url()}",
            )
        except PermissionError as e:
            raise EnvironmentError(
                f"Permission denied running Docker: {e}",
                recovery_hint="Add your user to the docker group",
            )

    async def _succeeds(self, args: list[str]) -> bool:
        try:
            result = await self._run(args, timeout=self.settings.command_timeout)
        except (LauncherError, OSError) as e:
            logger.debug(f"{' '.join(args[-1:])} check failed: {e}")
            return False
        return result.ok

    # ==========================================================================
    # Daemon checks
    # ==========================================================================

    async def version_check(self) -> bool:
        """Check if the docker command is available. Never raises."""
        installed = await self._succeeds(get_docker_command() + ["--version"])
        logger.debug(f"Docker installed: {installed}")
        return installed

    async def daemon_check(self) -> bool:
        """Check if the Docker daemon is reachable. Never raises."""
        running = await self._succeeds(get_docker_command() + ["info"])
        logger.debug(f"Docker daemon running: {running}")
        return running

    async def docker_version(self) -> str | None:
        """Get the Docker version string, e.g. "Docker version 24.0.7, build afdd53b"."""
        try:
            result = await self._run(
                get_docker_command() + ["--version"], timeout=self.settings.command_timeout
            )
        except (LauncherError, OSError) as e:
            logger.debug(f"Could not get Docker version: {e}")
            return None
        return result.stdout.strip() if result.ok else None

    async def start_daemon(self) -> bool:
        """
        Best-effort launch of the Docker daemon.

        Returns:
            True once the daemon answers `docker info` within the configured timeout
        """
        command = get_daemon_launch_command()
        if command is None:
            logger.info("No known way to start the Docker daemon on this platform")
            return False

        logger.info(f"Starting Docker daemon: {' '.join(command)}")
        try:
            result = await self._run(command, timeout=self.settings.command_timeout)
        except (LauncherError, OSError) as e:
            logger.warning(f"Failed to launch Docker daemon: {e}")
            return False
        if not result.ok:
            logger.warning(f"Docker daemon launcher exited with code {result.returncode}")
            return False

        deadline = time.monotonic() + self.settings.daemon_start_timeout
        while time.monotonic() < deadline:
            if await self.daemon_check():
                logger.info("Docker daemon is running")
                return True
            await asyncio.sleep(2)
        logger.warning("Docker daemon did not come up in time")
        return False

    def install_url(self) -> str:
        return get_install_url()

    # ==========================================================================
    # Stack status
    # ==========================================================================

    async def status(self) -> StackStatus:
        """
        Get comprehensive stack status.

        containers_up requires at least the expected number of containers,
        all running; healthy additionally requires every container to report
        no health probe or a passing one.
        """
        if not await self.version_check():
            return StackStatus()
        if not await self.daemon_check():
            return StackStatus(installed=True)

        try:
            result = await self._run(
                self._compose("ps", "--format", "json"), timeout=self.settings.command_timeout
            )
        except LauncherError as e:
            return StackStatus(installed=True, running=True, error=e.message)

        if not result.ok:
            return StackStatus(
                installed=True,
                running=True,
                error=_summarize(result.stderr) or f"docker compose ps failed with code {result.returncode}",
            )

        output = result.stdout.strip()
        if not output:
            return StackStatus(installed=True, running=True)

        records, failures = parse_ps_output(output)
        if not records:
            return StackStatus(
                installed=True,
                running=True,
                error=f"Could not parse container status ({failures} unreadable line(s))",
            )

        containers_up = len(records) >= self.settings.expected_containers and all(
            r.is_running for r in records
        )
        healthy = containers_up and all(r.is_healthy for r in records)
        logger.debug(
            f"Stack status: {len(records)} container(s), up={containers_up}, healthy={healthy}"
        )
        return StackStatus(
            installed=True, running=True, containers_up=containers_up, healthy=healthy
        )

    # ==========================================================================
    # Stack lifecycle
    # ==========================================================================

    async def pull_images(self, on_progress: PullCallback | None = None) -> None:
        """
        Pull every image in the compose definition, streaming progress.

        Raises:
            TransientInfraError: On the pull timeout (network/timeout)
            ComposeError: If the pull exits with a non-zero status
        """

        async def handle_line(line: str) -> None:
            match = PULL_LINE_PATTERN.match(line)
            if match:
                event = PullEvent(source=match.group(1), status=match.group(2))
            else:
                event = PullEvent(source="docker", status=line.strip())
            if on_progress is not None:
                await maybe_await(on_progress(event))

        logger.info("Pulling stack images...")
        try:
            result = await self._stream(
                self._compose("pull"), handle_line, timeout=self.settings.pull_timeout
            )
        except TransientInfraError:
            raise TransientInfraError(
                f"Image pull hit the network/timeout limit ({self.settings.pull_timeout:.0f}s)",
                recovery_hint="Check your internet connection and retry",
            )

        if not result.ok:
            raise ComposeError(
                f"Docker pull failed with code {result.returncode}: {_summarize(result.stdout)}",
                exit_code=result.returncode,
                stderr=result.stdout,
            )
        logger.info("All images pulled successfully")

    async def up(self, credentials: ContainerCredentials | None = None) -> None:
        """
        Start the stack in detached mode.

        Credentials are validated before any subprocess is spawned.

        Raises:
            ConfigurationError: Invalid credentials or missing compose file
            PortConflictError / MissingImageError / DaemonUnreachableError / ComposeError
        """
        validated = CredentialValidator.validate(credentials)
        args = self._compose("up", "-d")

        logger.info("Starting containers with docker compose...")
        # Merged output streams to the log sink live; classification reads the same text
        result = await self._stream(
            args, None, timeout=self.settings.compose_timeout, env=validated.to_env()
        )
        if not result.ok:
            error = classify_compose_failure(result.stdout, result.returncode)
            logger.error(f"docker compose up failed: {error.message}")
            raise error
        logger.info("Containers started successfully")

    async def down(self) -> bool:
        """
        Stop the stack.

        Idempotent: a clean exit or a signal-terminated exit both count as
        success so teardown never fails a shutdown sequence.

        Raises:
            ComposeError: If compose exits with a positive non-zero status
        """
        logger.info("Stopping containers...")
        result = await self._stream(self._compose("down"), None, timeout=self.settings.compose_timeout)
        if result.returncode is None or result.returncode <= 0:
            logger.info("Containers stopped")
            return True
        raise ComposeError(
            f"Docker compose down failed with code {result.returncode}: {_summarize(result.stdout)}",
            exit_code=result.returncode,
            stderr=result.stdout,
        )

    async def prune(self) -> None:
        """Remove stopped containers, dangling images and unused networks"""
        result = await self._run(
            get_docker_command() + ["system", "prune", "-f"], timeout=self.settings.compose_timeout
        )
        if not result.ok:
            raise ComposeError(
                f"Docker prune failed with code {result.returncode}: {_summarize(result.stderr)}",
                exit_code=result.returncode,
                stderr=result.stderr,
            )

    # ==========================================================================
    # Container exec
    # ==========================================================================

    async def exec(
        self,
        container: str,
        command: list[str],
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Run a command inside a running container.

        Raises:
            ComposeError: If check is set and the command exits non-zero
        """
        args = get_docker_command() + ["exec", container, *command]
        result = await self._run(args, timeout=timeout or self.settings.exec_timeout)
        if check and not result.ok:
            raise ComposeError(
                f"Command failed in {container} with code {result.returncode}: "
                f"{_summarize(result.stderr) or _summarize(result.stdout)}",
                exit_code=result.returncode,
                stderr=result.stderr,
            )
        return result

    async def stream_exec(
        self,
        container: str,
        command: list[str],
        on_line: LineCallback | None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command inside a container, streaming merged output line by line"""
        args = get_docker_command() + ["exec", container, *command]
        return await self._stream(args, on_line, timeout=timeout or self.settings.exec_timeout)
