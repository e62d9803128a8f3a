"""
Dependency Installer - tooling inside the backend container

Probes for the tools the backend shells out to and installs them with the
upstream installer script when any are missing.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from trh_launcher.core.exceptions import ComposeError, LauncherError, TransientInfraError
from trh_launcher.runtime.gateway import RuntimeGateway
from trh_launcher.runtime.models import InstallEvent
from trh_launcher.runtime.process import maybe_await
from trh_launcher.setup.models import DependencySet

logger = logging.getLogger(__name__)

InstallCallback = Callable[[InstallEvent], Awaitable[None] | None]

SCRIPT_PATH = "/tmp/install_deps.sh"
PROGRESS_MARKERS = ("Installing", "Setting up", "STEP")
PROGRESS_MAX_LENGTH = 50

# Install locations linked into /usr/local/bin, which is already on PATH
SYMLINKS = {
    "pnpm": "/root/.local/share/pnpm/pnpm",
    "node": "/root/.nvm/versions/node/*/bin/node",
    "npm": "/root/.nvm/versions/node/*/bin/npm",
    "npx": "/root/.nvm/versions/node/*/bin/npx",
    "forge": "/root/.foundry/bin/forge",
    "cast": "/root/.foundry/bin/cast",
    "anvil": "/root/.foundry/bin/anvil",
}


def symlink_script() -> str:
    return "; ".join(
        f"ln -sf {source} /usr/local/bin/{name} 2>/dev/null || true"
        for name, source in SYMLINKS.items()
    )


class DependencyInstaller:
    """Checks and installs the backend container's required tools"""

    def __init__(self, gateway: RuntimeGateway):
        self.gateway = gateway
        self.settings = gateway.settings

    @property
    def container(self) -> str:
        return self.settings.backend_container

    async def _has_tool(self, tool: str) -> bool:
        try:
            result = await self.gateway.exec(self.container, ["which", tool], check=False)
        except (LauncherError, OSError) as e:
            logger.debug(f"Probe for {tool} failed: {e}")
            return False
        return result.ok

    async def check(self) -> DependencySet:
        """
        Probe every required tool concurrently.

        A failing probe marks only that tool as missing.
        """
        tools = list(self.settings.required_tools)
        found = await asyncio.gather(*(self._has_tool(tool) for tool in tools))
        deps = DependencySet(tools=dict(zip(tools, found)))
        logger.info(f"Backend dependencies: {deps.to_dict()}")
        return deps

    async def install(self, on_progress: InstallCallback | None = None) -> None:
        """
        Download and run the installer script inside the backend container.

        Raises:
            TransientInfraError: If the script cannot be downloaded
            ComposeError: If the script exits with a non-zero status
        """

        async def report(status: str) -> None:
            if on_progress is not None:
                await maybe_await(on_progress(InstallEvent(source="installer", status=status)))

        await report("Downloading dependency installer...")
        try:
            await self.gateway.exec(
                self.container,
                [
                    "bash",
                    "-c",
                    f"wget -q {self.settings.install_script_url} -O {SCRIPT_PATH} "
                    f"&& chmod +x {SCRIPT_PATH}",
                ],
            )
        except LauncherError as e:
            logger.error(f"Installer download failed: {e.message}")
            raise TransientInfraError("Failed to download dependency installer")

        await report("Installing dependencies...")

        async def handle_line(line: str) -> None:
            if any(marker in line for marker in PROGRESS_MARKERS):
                await report(line.strip()[:PROGRESS_MAX_LENGTH])

        result = await self.gateway.stream_exec(
            self.container,
            ["bash", "-c", f"DEBIAN_FRONTEND=noninteractive TZ=UTC {SCRIPT_PATH}"],
            handle_line,
            timeout=self.settings.install_timeout,
        )
        if result.returncode is not None and result.returncode > 0:
            raise ComposeError(
                f"Dependency installation failed with code {result.returncode}",
                exit_code=result.returncode,
            )

        await report("Finalizing setup...")
        await self._link_tools()

    async def _link_tools(self) -> None:
        # Best-effort: the follow-up check() is the real verification
        try:
            await self.gateway.exec(self.container, ["bash", "-c", symlink_script()], check=False)
        except (LauncherError, OSError) as e:
            logger.debug(f"Ignoring symlink failure: {e}")
