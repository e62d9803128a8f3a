"""
Setup Orchestrator - the setup pipeline state machine

Drives DOCKER_CHECK -> IMAGE_PULL -> PORT_RESOLUTION/CONTAINER_START ->
DEPENDENCY_INSTALL -> HEALTH_CHECK -> DONE, publishing every transition to a
presentation adapter. Only one run (or stack operation) may be active at a time.
"""

import asyncio
import logging
from contextlib import contextmanager

from trh_launcher.core.config import Settings, get_settings
from trh_launcher.core.exceptions import (
    ConflictError,
    EnvironmentError,
    InvalidStateError,
    LauncherError,
    OperationInProgressError,
    PortConflictError,
    RuntimeNotInstalledError,
    TransientInfraError,
    VerificationError,
)
from trh_launcher.core.interfaces import IPresentationAdapter
from trh_launcher.core.validation import ContainerCredentials, CredentialValidator
from trh_launcher.ports.models import PortConflict
from trh_launcher.ports.probe import PortProbe, is_runtime_process
from trh_launcher.runtime.gateway import RuntimeGateway
from trh_launcher.runtime.models import InstallEvent, PullEvent, StackStatus
from trh_launcher.runtime.process import get_process_registry
from trh_launcher.setup.dependencies import DependencyInstaller
from trh_launcher.setup.health import HealthPoller
from trh_launcher.setup.models import (
    STEP_ORDER,
    SetupError,
    SetupPhase,
    SetupRun,
    SetupStep,
    StepStatus,
)

logger = logging.getLogger(__name__)

PULL_PROGRESS_STEP = 2
PULL_PROGRESS_CAP = 95
PULL_DETAIL_LENGTH = 35

ALREADY_RUNNING = "Already running"


def is_port_failure(error: Exception) -> bool:
    """True for start failures that another round of port resolution may fix"""
    if isinstance(error, ConflictError):
        return True
    message = str(getattr(error, "message", error)).lower()
    return "port" in message or "address already in use" in message


class HeadlessPresenter:
    """Presentation adapter that only logs; used when no UI is attached"""

    def __init__(self, auto_confirm: bool = False):
        self.auto_confirm = auto_confirm

    async def on_state(self, run: SetupRun) -> None:
        pass

    async def on_error(self, run: SetupRun, error: SetupError) -> None:
        logger.error(f"Setup failed: {error.title}: {error.message}")

    async def on_complete(self, run: SetupRun) -> None:
        logger.info("Setup complete")

    async def confirm_free_ports(self, conflicts: list[PortConflict]) -> bool:
        return self.auto_confirm


class OperationLock:
    """
    Run-ownership token.

    acquire() never awaits, so within one event loop two callers can never
    both own the lock.
    """

    def __init__(self):
        self._owner: str | None = None

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def busy(self) -> bool:
        return self._owner is not None

    def acquire(self, operation: str) -> None:
        if self._owner is not None:
            raise OperationInProgressError(self._owner)
        self._owner = operation

    def release(self) -> None:
        self._owner = None

    @contextmanager
    def hold(self, operation: str):
        self.acquire(operation)
        try:
            yield
        finally:
            self.release()


class SetupOrchestrator:
    """
    Sequences the setup steps and owns the current SetupRun.

    Example:
        orchestrator = SetupOrchestrator(presenter=presenter)
        run = await orchestrator.start(ContainerCredentials(admin_email="a@b.io"))
        if run.phase == SetupPhase.FAILED:
            run = await orchestrator.retry()
    """

    def __init__(
        self,
        gateway: RuntimeGateway | None = None,
        probe: PortProbe | None = None,
        poller: HealthPoller | None = None,
        installer: DependencyInstaller | None = None,
        presenter: IPresentationAdapter | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or (gateway.settings if gateway else get_settings())
        self.gateway = gateway or RuntimeGateway(self.settings)
        self.probe = probe or PortProbe(self.settings)
        self.poller = poller or HealthPoller(self.gateway)
        self.installer = installer or DependencyInstaller(self.gateway)
        self.presenter: IPresentationAdapter = presenter or HeadlessPresenter()

        self.run = SetupRun()
        self._lock = OperationLock()
        self._credentials = ContainerCredentials()
        self._task: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self._lock.busy

    @property
    def current_operation(self) -> str | None:
        return self._lock.owner

    # ==========================================================================
    # Entry points
    # ==========================================================================

    def _begin(self, credentials: ContainerCredentials | None, operation: str) -> SetupRun:
        # Validation happens before the lock so a bad request never blocks others
        validated = CredentialValidator.validate(credentials)
        self._lock.acquire(operation)
        self._credentials = validated
        self.run = SetupRun()
        return self.run

    async def start(
        self, credentials: ContainerCredentials | None = None, force: bool = False
    ) -> SetupRun:
        """
        Run the setup pipeline to completion.

        Raises:
            OperationInProgressError: If another operation owns the lock
            ConfigurationError: If the credentials are invalid
        """
        run = self._begin(credentials, "setup")
        return await self._execute(run, force)

    async def retry(self) -> SetupRun:
        """Reset every step and run the pipeline again from DOCKER_CHECK"""
        self._check_retryable()
        run = self._begin(self._credentials, "setup")
        return await self._execute(run, force=True)

    def launch(
        self, credentials: ContainerCredentials | None = None, force: bool = False
    ) -> SetupRun:
        """
        Start the pipeline as a background task.

        Lock acquisition and credential validation happen synchronously, so
        rejections are raised to the caller before any task is created.
        """
        run = self._begin(credentials, "setup")
        self._task = asyncio.create_task(self._execute(run, force))
        return run

    def launch_retry(self) -> SetupRun:
        self._check_retryable()
        run = self._begin(self._credentials, "setup")
        self._task = asyncio.create_task(self._execute(run, force=True))
        return run

    def _check_retryable(self) -> None:
        if self._lock.busy:
            raise OperationInProgressError(self._lock.owner)
        if self.run.phase != SetupPhase.FAILED:
            raise InvalidStateError(
                "No failed setup run to retry", recovery_hint="Start a new setup instead"
            )

    # ==========================================================================
    # Pipeline
    # ==========================================================================

    async def _execute(self, run: SetupRun, force: bool) -> SetupRun:
        try:
            run.start()
            await self._publish(run)
            if not force and await self._fast_path(run):
                return run

            steps = [
                (SetupStep.DOCKER_CHECK, self._check_docker),
                (SetupStep.IMAGE_PULL, self._pull_images),
                (SetupStep.CONTAINER_START, self._start_containers),
                (SetupStep.DEPENDENCY_INSTALL, self._install_dependencies),
                (SetupStep.HEALTH_CHECK, self._check_health),
            ]
            for step, action in steps:
                if step != SetupStep.CONTAINER_START:
                    run.phase = SetupPhase(step.value)
                try:
                    await action(run)
                except LauncherError as e:
                    await self._fail(run, self._failed_step(run, step), e)
                    return run
                except Exception as e:
                    logger.exception(f"Unexpected error during {step.value}")
                    await self._fail(
                        run, self._failed_step(run, step), LauncherError(f"Unexpected error: {e}")
                    )
                    return run

            run.finish(SetupPhase.DONE)
            logger.info("Setup finished: platform is ready")
            await self._publish(run)
            await self.presenter.on_complete(run)
            return run
        except asyncio.CancelledError:
            if not run.phase.is_terminal:
                await self._fail(
                    run,
                    self._failed_step(run, SetupStep.DOCKER_CHECK),
                    LauncherError("Setup was cancelled"),
                )
            raise
        finally:
            self._lock.release()

    async def _fast_path(self, run: SetupRun) -> bool:
        run.phase = SetupPhase.FAST_PATH
        try:
            status = await self.gateway.status()
        except LauncherError as e:
            logger.debug(f"Fast-path status check failed: {e}")
            return False
        if not status.healthy:
            return False

        logger.info("Stack already running and healthy, skipping setup")
        for step in STEP_ORDER:
            state = run.steps[step]
            state.status = StepStatus.SUCCEEDED
            state.detail = ALREADY_RUNNING
            if step in (SetupStep.IMAGE_PULL, SetupStep.DEPENDENCY_INSTALL):
                state.progress = 100
        run.finish(SetupPhase.DONE)
        await self._publish(run)
        await self.presenter.on_complete(run)
        return True

    async def _check_docker(self, run: SetupRun) -> None:
        step = SetupStep.DOCKER_CHECK
        await self._update(run, step, StepStatus.RUNNING, "Checking Docker installation...")
        if not await self.gateway.version_check():
            raise RuntimeNotInstalledError()

        await self._update(run, step, detail="Checking Docker daemon...")
        if not await self.gateway.daemon_check():
            raise EnvironmentError(
                "Docker is installed but not running",
                recovery_hint="Start Docker Desktop and retry",
            )

        version = await self.gateway.docker_version()
        await self._update(run, step, StepStatus.SUCCEEDED, version or "Docker is running")

    async def _pull_images(self, run: SetupRun) -> None:
        step = SetupStep.IMAGE_PULL
        await self._update(run, step, StepStatus.RUNNING, "Pulling images...", progress=0)
        progress = 0

        async def on_event(event: PullEvent) -> None:
            nonlocal progress
            progress = min(progress + PULL_PROGRESS_STEP, PULL_PROGRESS_CAP)
            await self._update(run, step, detail=event.status[:PULL_DETAIL_LENGTH], progress=progress)

        await self.gateway.pull_images(on_event)
        await self._update(run, step, StepStatus.SUCCEEDED, "Images ready", progress=100)

    async def _resolve_ports(self, run: SetupRun, step: SetupStep) -> None:
        """
        Make the required ports available, asking before stopping anything.

        Raises:
            ConflictError: If the user declines or a port stays bound
        """
        await self._update(run, step, StepStatus.RUNNING, "Checking ports...")
        result = await self.probe.find_conflicts()
        if result.available:
            return

        external = [c for c in result.conflicts if not is_runtime_process(c.process_name)]
        ports = sorted({c.port for c in external})
        await self._update(run, step, detail=f"Ports in use: {', '.join(map(str, ports))}")

        if not await self.presenter.confirm_free_ports(external):
            raise PortConflictError(
                f"Required ports are in use: {', '.join(map(str, ports))}", ports=ports
            )

        await self._update(run, step, detail="Stopping conflicting processes...")
        await self.probe.free_ports(ports)

        recheck = await self.probe.find_conflicts()
        if not recheck.available:
            still = sorted(
                {c.port for c in recheck.conflicts if not is_runtime_process(c.process_name)}
            )
            raise ConflictError(
                f"Ports still in use: {', '.join(map(str, still))}. Free them manually",
                ports=still,
            )

    async def _start_containers(self, run: SetupRun) -> None:
        attempts = self.settings.container_start_attempts

        for attempt in range(1, attempts + 1):
            # The first resolution owns the PORT_RESOLUTION step; later rounds
            # report under CONTAINER_START so no step regresses after succeeding
            if attempt == 1:
                run.phase = SetupPhase.PORT_RESOLUTION
                await self._resolve_ports(run, SetupStep.PORT_RESOLUTION)
                await self._update(
                    run, SetupStep.PORT_RESOLUTION, StepStatus.SUCCEEDED, "All ports available"
                )
            else:
                await self._resolve_ports(run, SetupStep.CONTAINER_START)

            run.phase = SetupPhase.CONTAINER_START
            await self._update(
                run,
                SetupStep.CONTAINER_START,
                StepStatus.RUNNING,
                "Starting containers..." if attempt == 1 else f"Retrying start ({attempt}/{attempts})...",
            )
            try:
                await self.gateway.up(self._credentials)
            except LauncherError as e:
                if not is_port_failure(e):
                    raise
                logger.warning(f"Start attempt {attempt}/{attempts} hit a port conflict: {e.message}")
                continue

            await self._update(run, SetupStep.CONTAINER_START, StepStatus.SUCCEEDED, "Containers started")
            return

        raise PortConflictError(
            f"Could not start containers after {attempts} attempts: required ports keep being taken",
            ports=[r.port for r in self.probe.requirements],
        )

    async def _install_dependencies(self, run: SetupRun) -> None:
        step = SetupStep.DEPENDENCY_INSTALL
        await self._update(run, step, StepStatus.RUNNING, "Waiting for backend container...", progress=0)
        await asyncio.sleep(self.settings.dependency_settle_delay)

        await self._update(run, step, detail="Checking dependencies...", progress=10)
        deps = await self.installer.check()
        if deps.all_installed:
            await self._update(run, step, StepStatus.SUCCEEDED, "All tools installed", progress=100)
            return

        await self._update(
            run, step, detail=f"Installing: {', '.join(deps.missing)}...", progress=30
        )

        async def on_event(event: InstallEvent) -> None:
            await self._update(run, step, detail=event.status)

        await self.installer.install(on_event)

        await self._update(run, step, detail="Verifying installation...", progress=90)
        await asyncio.sleep(self.settings.verification_settle_delay)
        verified = await self.installer.check()
        if not verified.all_installed:
            raise VerificationError(verified.missing)
        await self._update(run, step, StepStatus.SUCCEEDED, "All tools installed", progress=100)

    async def _check_health(self, run: SetupRun) -> None:
        step = SetupStep.HEALTH_CHECK
        await self._update(run, step, StepStatus.RUNNING, "Waiting for services...")

        async def on_status(label: str) -> None:
            await self._update(run, step, detail=label)

        timeout = self.settings.health_timeout
        if not await self.poller.wait_healthy(timeout, on_status):
            raise TransientInfraError(
                f"Services did not become healthy within {timeout:.0f}s",
                recovery_hint="Check the container logs and retry",
            )
        await self._update(run, step, StepStatus.SUCCEEDED, "Platform is ready")

    # ==========================================================================
    # State publishing
    # ==========================================================================

    async def _publish(self, run: SetupRun) -> None:
        try:
            await self.presenter.on_state(run)
        except Exception as e:
            logger.warning(f"Presenter failed to render state: {e}")

    async def _update(
        self,
        run: SetupRun,
        step: SetupStep,
        status: StepStatus | None = None,
        detail: str | None = None,
        progress: int | None = None,
    ) -> None:
        state = run.steps[step]
        if state.status == StepStatus.SUCCEEDED and status not in (None, StepStatus.SUCCEEDED):
            logger.debug(f"Ignoring {status.value} for completed step {step.value}")
            return
        if status is not None:
            state.status = status
        if detail is not None:
            state.detail = detail
        if progress is not None:
            state.progress = progress
        await self._publish(run)

    @staticmethod
    def _failed_step(run: SetupRun, default: SetupStep) -> SetupStep:
        """The step that was running when the failure surfaced"""
        for step in STEP_ORDER:
            if run.steps[step].status == StepStatus.RUNNING:
                return step
        return default

    async def _fail(self, run: SetupRun, step: SetupStep, error: LauncherError) -> None:
        run.steps[step].status = StepStatus.FAILED
        run.steps[step].detail = _failure_detail(error)
        run.error = SetupError(
            title=_failure_title(step, error),
            message=error.message,
            recovery_hint=error.recovery_hint,
            retryable=error.retryable,
            show_install=isinstance(error, RuntimeNotInstalledError),
            kind=type(error).__name__,
        )
        run.finish(SetupPhase.FAILED)
        logger.error(f"Setup failed at {step.value}: {error}")
        await self._publish(run)
        try:
            await self.presenter.on_error(run, run.error)
        except Exception as e:
            logger.warning(f"Presenter failed to render error: {e}")

    # ==========================================================================
    # Stack operations
    # ==========================================================================

    async def status(self) -> StackStatus:
        return await self.gateway.status()

    async def stop(self) -> bool:
        with self._lock.hold("stop"):
            return await self.gateway.down()

    async def restart(self, credentials: ContainerCredentials | None = None) -> None:
        validated = CredentialValidator.validate(credentials) if credentials else self._credentials
        with self._lock.hold("restart"):
            await self.gateway.down()
            await self.gateway.up(validated)

    async def prune(self) -> None:
        with self._lock.hold("prune"):
            await self.gateway.prune()

    async def start_daemon(self) -> bool:
        with self._lock.hold("start-daemon"):
            return await self.gateway.start_daemon()

    async def shutdown(self, stop_stack: bool = True) -> None:
        """
        Best-effort teardown for process exit.

        Cancels the running pipeline, terminates in-flight subprocesses and
        optionally stops the stack. Never raises.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except (asyncio.CancelledError, Exception):
                pass

        terminated = await get_process_registry().terminate_all(self.settings.shutdown_grace_period)
        if terminated:
            logger.info(f"Terminated {terminated} in-flight subprocess(es)")

        if stop_stack:
            try:
                await self.gateway.down()
            except (LauncherError, OSError) as e:
                logger.warning(f"Could not stop containers during shutdown: {e}")


def _failure_title(step: SetupStep, error: LauncherError) -> str:
    if isinstance(error, RuntimeNotInstalledError):
        return "Docker Required"
    if isinstance(error, EnvironmentError):
        return "Docker Not Running"
    if isinstance(error, ConflictError):
        return "Port Conflict"
    if isinstance(error, VerificationError):
        return "Dependencies Missing"
    return {
        SetupStep.DOCKER_CHECK: "Docker Check Failed",
        SetupStep.IMAGE_PULL: "Image Pull Failed",
        SetupStep.PORT_RESOLUTION: "Port Conflict",
        SetupStep.CONTAINER_START: "Start Failed",
        SetupStep.DEPENDENCY_INSTALL: "Dependency Install Failed",
        SetupStep.HEALTH_CHECK: "Timeout",
    }[step]


def _failure_detail(error: LauncherError) -> str:
    if isinstance(error, RuntimeNotInstalledError):
        return "Not installed"
    if isinstance(error, EnvironmentError):
        return "Not running"
    if isinstance(error, ConflictError):
        return "Port conflict"
    return "Failed"
