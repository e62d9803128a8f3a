"""
Tests for the SetupOrchestrator state machine

Every collaborator is mocked; each test drives the pipeline through one
scenario and checks the resulting run, the calls made and what the
presenter was told.
"""

import asyncio
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from trh_launcher.core.config import Settings
from trh_launcher.core.exceptions import (
    ComposeError,
    ConfigurationError,
    InvalidStateError,
    MissingImageError,
    OperationInProgressError,
    PortConflictError,
)
from trh_launcher.core.validation import ContainerCredentials
from trh_launcher.ports.models import PortCheckResult, PortConflict
from trh_launcher.runtime.models import PullEvent, StackStatus
from trh_launcher.runtime.process import get_process_registry, run_command
from trh_launcher.setup.models import (
    STEP_ORDER,
    DependencySet,
    SetupPhase,
    SetupStep,
    StepStatus,
)
from trh_launcher.setup.orchestrator import OperationLock, SetupOrchestrator, is_port_failure

ALL_TOOLS = DependencySet(tools={"pnpm": True, "node": True, "forge": True, "aws": True})
NO_TOOLS = DependencySet(tools={"pnpm": False, "node": False, "forge": False, "aws": False})
FREE = PortCheckResult(available=True)
NODE_ON_3000 = PortCheckResult(
    available=False, blocked_ports=[3000], conflicts=[PortConflict(3000, 4242, "node")]
)

STATUS_RANK = {
    StepStatus.PENDING: 0,
    StepStatus.RUNNING: 1,
    StepStatus.SUCCEEDED: 2,
    StepStatus.FAILED: 2,
}


class RecordingPresenter:
    """Presenter that records everything it is told"""

    def __init__(self, confirm: bool = True):
        self.confirm = confirm
        self.snapshots: list[dict] = []
        self.errors = []
        self.completed: list[str] = []
        self.confirm_calls: list[list[PortConflict]] = []

    async def on_state(self, run):
        self.snapshots.append(
            {step: (state.status, state.detail, state.progress) for step, state in run.steps.items()}
        )

    async def on_error(self, run, error):
        self.errors.append(error)

    async def on_complete(self, run):
        self.completed.append(run.run_id)

    async def confirm_free_ports(self, conflicts):
        self.confirm_calls.append(conflicts)
        return self.confirm


@pytest.fixture
def calls() -> list[str]:
    return []


@pytest.fixture
def settings() -> Settings:
    return Settings(dependency_settle_delay=0, verification_settle_delay=0, health_timeout=180)


@pytest.fixture
def gateway(settings, calls):
    gateway = MagicMock()
    gateway.settings = settings

    def recorder(name, value=None):
        async def _call(*args, **kwargs):
            calls.append(name)
            return value

        return AsyncMock(side_effect=_call)

    gateway.version_check = recorder("version_check", True)
    gateway.daemon_check = recorder("daemon_check", True)
    gateway.docker_version = AsyncMock(return_value="Docker version 24.0.7")
    gateway.status = AsyncMock(return_value=StackStatus(installed=True, running=True))
    gateway.pull_images = recorder("pull")
    gateway.up = recorder("up")
    gateway.down = recorder("down", True)
    gateway.prune = recorder("prune")
    gateway.start_daemon = recorder("start_daemon", True)
    return gateway


@pytest.fixture
def probe(settings, calls):
    probe = MagicMock()
    probe.requirements = list(settings.required_ports)

    async def find_conflicts():
        calls.append("find_conflicts")
        return FREE

    probe.find_conflicts = AsyncMock(side_effect=find_conflicts)
    probe.free_ports = AsyncMock()
    return probe


@pytest.fixture
def poller(calls):
    poller = MagicMock()

    async def wait_healthy(timeout=None, on_status=None):
        calls.append("wait_healthy")
        if on_status:
            await on_status("All services healthy")
        return True

    poller.wait_healthy = AsyncMock(side_effect=wait_healthy)
    return poller


@pytest.fixture
def installer(calls):
    installer = MagicMock()

    async def check():
        calls.append("check")
        return ALL_TOOLS

    installer.check = AsyncMock(side_effect=check)
    installer.install = AsyncMock()
    return installer


@pytest.fixture
def presenter():
    return RecordingPresenter()


@pytest.fixture
def orchestrator(gateway, probe, poller, installer, presenter, settings):
    return SetupOrchestrator(
        gateway=gateway,
        probe=probe,
        poller=poller,
        installer=installer,
        presenter=presenter,
        settings=settings,
    )


def assert_monotonic(snapshots: list[dict]) -> None:
    for previous, current in zip(snapshots, snapshots[1:]):
        for step in STEP_ORDER:
            before, after = previous[step][0], current[step][0]
            if before in (StepStatus.SUCCEEDED, StepStatus.FAILED):
                assert after == before, f"{step.value} went from {before.value} to {after.value}"
            else:
                assert STATUS_RANK[after] >= STATUS_RANK[before]


class TestOperationLock:
    def test_acquire_and_release(self):
        lock = OperationLock()
        lock.acquire("setup")
        assert lock.busy
        with pytest.raises(OperationInProgressError):
            lock.acquire("stop")
        lock.release()
        assert not lock.busy

    def test_hold_releases_on_error(self):
        lock = OperationLock()
        with pytest.raises(RuntimeError):
            with lock.hold("stop"):
                raise RuntimeError("boom")
        assert lock.owner is None


class TestIsPortFailure:
    def test_conflict_error(self):
        assert is_port_failure(PortConflictError("in use")) is True

    def test_message_mentions_port(self):
        assert is_port_failure(ComposeError("Bind for 0.0.0.0:8000 failed: port is allocated"))
        assert is_port_failure(ComposeError("listen tcp: Address already in use"))

    def test_other_failure(self):
        assert is_port_failure(MissingImageError("manifest unknown")) is False


class TestHappyPath:
    """End-to-end scenarios that reach DONE"""

    @pytest.mark.asyncio
    async def test_fresh_machine_end_to_end(self, orchestrator, installer, presenter, calls):
        """Test a fresh machine: nothing running, tools missing, all steps succeed in order"""
        checks = iter([NO_TOOLS, ALL_TOOLS])

        async def check():
            calls.append("check")
            return next(checks)

        async def install(on_progress=None):
            calls.append("install")

        installer.check = AsyncMock(side_effect=check)
        installer.install = AsyncMock(side_effect=install)

        run = await orchestrator.start()

        assert run.phase == SetupPhase.DONE
        assert calls == [
            "version_check",
            "daemon_check",
            "pull",
            "find_conflicts",
            "up",
            "check",
            "install",
            "check",
            "wait_healthy",
        ]
        assert all(run.steps[step].status == StepStatus.SUCCEEDED for step in STEP_ORDER)
        assert run.steps[SetupStep.DEPENDENCY_INSTALL].progress == 100
        assert presenter.completed == [run.run_id]
        assert presenter.errors == []
        assert run.finished_at is not None
        assert_monotonic(presenter.snapshots)
        assert not orchestrator.busy

    @pytest.mark.asyncio
    async def test_tools_already_installed_skip_install(self, orchestrator, installer):
        run = await orchestrator.start()
        assert run.phase == SetupPhase.DONE
        installer.install.assert_not_called()
        assert installer.check.await_count == 1

    @pytest.mark.asyncio
    async def test_fast_path_when_already_healthy(self, orchestrator, gateway, presenter):
        gateway.status = AsyncMock(
            return_value=StackStatus(installed=True, running=True, containers_up=True, healthy=True)
        )

        run = await orchestrator.start()

        assert run.phase == SetupPhase.DONE
        gateway.status.assert_awaited_once()
        gateway.version_check.assert_not_called()
        gateway.up.assert_not_called()
        assert all(run.steps[s].detail == "Already running" for s in STEP_ORDER)
        assert all(run.steps[s].status == StepStatus.SUCCEEDED for s in STEP_ORDER)
        assert presenter.completed == [run.run_id]

    @pytest.mark.asyncio
    async def test_credentials_passed_to_up(self, orchestrator, gateway):
        await orchestrator.start(
            ContainerCredentials(admin_email=" admin@example.com ", admin_password="secret123")
        )
        credentials = gateway.up.call_args.args[0]
        assert credentials.admin_email == "admin@example.com"

    @pytest.mark.asyncio
    async def test_launch_runs_in_background(self, orchestrator, presenter):
        run = orchestrator.launch()
        assert orchestrator.busy
        await orchestrator._task
        assert run.phase == SetupPhase.DONE
        assert presenter.completed == [run.run_id]


class TestImagePull:
    @pytest.mark.asyncio
    async def test_progress_is_capped_then_completed(self, orchestrator, gateway, presenter):
        async def pull(on_progress=None):
            for i in range(60):
                await on_progress(PullEvent(source="trh-backend", status=f"Downloading layer {i} " + "x" * 40))

        gateway.pull_images = AsyncMock(side_effect=pull)

        run = await orchestrator.start()

        progresses = [
            snap[SetupStep.IMAGE_PULL][2]
            for snap in presenter.snapshots
            if snap[SetupStep.IMAGE_PULL][0] == StepStatus.RUNNING
        ]
        assert progresses[1:4] == [2, 4, 6]
        assert max(progresses) == 95
        details = [snap[SetupStep.IMAGE_PULL][1] for snap in presenter.snapshots]
        assert all(len(d) <= 35 for d in details if d.startswith("Downloading layer"))
        assert run.steps[SetupStep.IMAGE_PULL].progress == 100

    @pytest.mark.asyncio
    async def test_pull_failure_is_retryable(self, orchestrator, gateway):
        gateway.pull_images = AsyncMock(side_effect=ComposeError("Docker pull failed with code 1"))

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert run.steps[SetupStep.IMAGE_PULL].status == StepStatus.FAILED
        assert run.error.retryable is True
        gateway.up.assert_not_called()


class TestDockerCheck:
    @pytest.mark.asyncio
    async def test_not_installed(self, orchestrator, gateway, presenter):
        gateway.version_check = AsyncMock(return_value=False)

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert run.steps[SetupStep.DOCKER_CHECK].status == StepStatus.FAILED
        assert run.steps[SetupStep.DOCKER_CHECK].detail == "Not installed"
        assert run.error.show_install is True
        assert run.error.title == "Docker Required"
        assert run.error.retryable is True
        assert presenter.errors == [run.error]
        gateway.pull_images.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_running(self, orchestrator, gateway):
        gateway.daemon_check = AsyncMock(return_value=False)

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert run.error.show_install is False
        assert run.error.recovery_hint == "Start Docker Desktop and retry"
        assert run.error.kind == "EnvironmentError"


class TestPortResolution:
    @pytest.mark.asyncio
    async def test_confirmed_ports_are_freed(self, orchestrator, probe, presenter):
        probe.find_conflicts = AsyncMock(side_effect=[NODE_ON_3000, FREE])

        run = await orchestrator.start()

        assert run.phase == SetupPhase.DONE
        assert presenter.confirm_calls == [[PortConflict(3000, 4242, "node")]]
        probe.free_ports.assert_awaited_once_with([3000])
        assert probe.find_conflicts.await_count == 2

    @pytest.mark.asyncio
    async def test_cancel_fails_with_port_conflict(self, orchestrator, probe, presenter, gateway):
        presenter.confirm = False
        probe.find_conflicts = AsyncMock(return_value=NODE_ON_3000)

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert run.error.kind == "PortConflictError"
        assert run.error.title == "Port Conflict"
        assert run.steps[SetupStep.PORT_RESOLUTION].status == StepStatus.FAILED
        probe.free_ports.assert_not_called()
        gateway.up.assert_not_called()

    @pytest.mark.asyncio
    async def test_still_blocked_after_freeing(self, orchestrator, probe, gateway):
        probe.find_conflicts = AsyncMock(side_effect=[NODE_ON_3000, NODE_ON_3000])

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert run.error.kind == "ConflictError"
        assert "3000" in run.error.message
        gateway.up.assert_not_called()


class TestContainerStart:
    @pytest.mark.asyncio
    async def test_three_port_failures_are_terminal(self, orchestrator, gateway, probe, presenter):
        """Test that port resolution runs exactly 3 times and up is never tried a 4th time"""
        gateway.up = AsyncMock(side_effect=PortConflictError("Port already in use: 3000"))

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert probe.find_conflicts.await_count == 3
        assert gateway.up.await_count == 3
        assert run.error.kind == "PortConflictError"
        assert run.steps[SetupStep.CONTAINER_START].status == StepStatus.FAILED
        assert run.steps[SetupStep.PORT_RESOLUTION].status == StepStatus.SUCCEEDED
        assert_monotonic(presenter.snapshots)

    @pytest.mark.asyncio
    async def test_port_failure_then_success(self, orchestrator, gateway, probe):
        gateway.up = AsyncMock(side_effect=[ComposeError("bind: address already in use"), None])

        run = await orchestrator.start()

        assert run.phase == SetupPhase.DONE
        assert probe.find_conflicts.await_count == 2
        assert gateway.up.await_count == 2

    @pytest.mark.asyncio
    async def test_other_failure_is_terminal_immediately(self, orchestrator, gateway, probe):
        gateway.up = AsyncMock(side_effect=MissingImageError("Image not found: manifest unknown"))

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert gateway.up.await_count == 1
        assert probe.find_conflicts.await_count == 1
        assert run.error.retryable is False
        assert run.error.title == "Start Failed"


class TestDependencyInstall:
    @pytest.mark.asyncio
    async def test_verification_failure(self, orchestrator, installer):
        installer.check = AsyncMock(
            return_value=DependencySet(tools={"pnpm": True, "node": True, "forge": False, "aws": False})
        )

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        installer.install.assert_awaited_once()
        assert installer.check.await_count == 2
        assert run.error.kind == "VerificationError"
        assert run.error.message == "Still missing: forge, aws"
        assert run.steps[SetupStep.DEPENDENCY_INSTALL].status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_install_failure(self, orchestrator, installer, poller):
        installer.check = AsyncMock(return_value=NO_TOOLS)
        installer.install = AsyncMock(side_effect=ComposeError("Dependency installation failed with code 1"))

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert installer.check.await_count == 1
        poller.wait_healthy.assert_not_called()


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_timeout_is_retryable_failure(self, orchestrator, poller):
        poller.wait_healthy = AsyncMock(return_value=False)

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert run.error.kind == "TransientInfraError"
        assert run.error.retryable is True
        assert run.error.title == "Timeout"
        assert poller.wait_healthy.call_args.args[0] == 180


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_restarts_from_first_step(self, orchestrator, gateway, poller, calls):
        outcomes = iter([False, True])

        async def wait_healthy(timeout=None, on_status=None):
            calls.append("wait_healthy")
            return next(outcomes)

        poller.wait_healthy = AsyncMock(side_effect=wait_healthy)

        first = await orchestrator.start()
        assert first.phase == SetupPhase.FAILED
        calls.clear()

        second = await orchestrator.retry()

        assert second.phase == SetupPhase.DONE
        assert second.run_id != first.run_id
        assert calls.index("version_check") < calls.index("wait_healthy")
        assert calls[0] == "version_check"
        # Retry skips the fast-path status check
        assert gateway.status.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_resets_steps(self, orchestrator, gateway, presenter):
        gateway.daemon_check = AsyncMock(return_value=False)
        await orchestrator.start()
        presenter.snapshots.clear()

        await orchestrator.retry()

        first_snapshot = presenter.snapshots[0]
        assert all(first_snapshot[step][0] == StepStatus.PENDING for step in STEP_ORDER)

    @pytest.mark.asyncio
    async def test_retry_reuses_credentials(self, orchestrator, gateway, poller):
        poller.wait_healthy = AsyncMock(side_effect=[False, True])
        await orchestrator.start(ContainerCredentials(admin_email="admin@example.com"))

        await orchestrator.retry()

        assert gateway.up.call_args.args[0].admin_email == "admin@example.com"

    @pytest.mark.asyncio
    async def test_retry_without_failure(self, orchestrator):
        with pytest.raises(InvalidStateError):
            await orchestrator.retry()

        await orchestrator.start()
        with pytest.raises(InvalidStateError):
            await orchestrator.retry()


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, orchestrator, poller):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def wait_healthy(timeout=None, on_status=None):
            entered.set()
            await release.wait()
            return True

        poller.wait_healthy = AsyncMock(side_effect=wait_healthy)

        first = asyncio.create_task(orchestrator.start())
        await entered.wait()
        active = orchestrator.run
        snapshot = active.to_dict()

        with pytest.raises(OperationInProgressError):
            await orchestrator.start()
        with pytest.raises(OperationInProgressError):
            orchestrator.launch()
        with pytest.raises(OperationInProgressError):
            await orchestrator.stop()

        assert orchestrator.run is active
        assert active.to_dict() == snapshot

        release.set()
        run = await first
        assert run.phase == SetupPhase.DONE
        assert not orchestrator.busy

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, orchestrator, gateway):
        gateway.version_check = AsyncMock(return_value=False)
        await orchestrator.start()

        assert not orchestrator.busy
        assert await orchestrator.stop() is True

    @pytest.mark.asyncio
    async def test_invalid_credentials_do_not_take_the_lock(self, orchestrator, gateway):
        with pytest.raises(ConfigurationError):
            await orchestrator.start(ContainerCredentials(admin_password="short"))

        assert not orchestrator.busy
        gateway.version_check.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_the_run(self, orchestrator, gateway):
        gateway.pull_images = AsyncMock(side_effect=RuntimeError("kaboom"))

        run = await orchestrator.start()

        assert run.phase == SetupPhase.FAILED
        assert "kaboom" in run.error.message
        assert run.steps[SetupStep.IMAGE_PULL].status == StepStatus.FAILED
        assert not orchestrator.busy


class TestStackOperations:
    @pytest.mark.asyncio
    async def test_restart(self, orchestrator, calls):
        await orchestrator.restart()
        assert calls == ["down", "up"]

    @pytest.mark.asyncio
    async def test_prune_and_start_daemon(self, orchestrator, gateway):
        await orchestrator.prune()
        assert await orchestrator.start_daemon() is True
        gateway.prune.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_stops_stack_and_never_raises(self, orchestrator, gateway):
        gateway.down = AsyncMock(side_effect=ComposeError("down failed", exit_code=1))
        await orchestrator.shutdown()
        gateway.down.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_pipeline(self, orchestrator, poller, presenter):
        entered = asyncio.Event()

        async def wait_healthy(timeout=None, on_status=None):
            entered.set()
            await asyncio.sleep(60)
            return True

        poller.wait_healthy = AsyncMock(side_effect=wait_healthy)
        run = orchestrator.launch()
        await entered.wait()

        await orchestrator.shutdown()

        assert run.phase == SetupPhase.FAILED
        assert run.steps[SetupStep.HEALTH_CHECK].status == StepStatus.FAILED
        assert not orchestrator.busy

    @pytest.mark.asyncio
    async def test_shutdown_terminates_in_flight_subprocess(self, orchestrator, gateway):
        """Test that a runtime command running when shutdown arrives does not outlive it"""
        registry = get_process_registry()

        async def slow_version_check():
            result = await run_command([sys.executable, "-c", "import time; time.sleep(30)"], timeout=60)
            return result.ok

        gateway.version_check = AsyncMock(side_effect=slow_version_check)
        run = orchestrator.launch()
        for _ in range(100):
            if registry.active:
                break
            await asyncio.sleep(0.05)
        assert len(registry.active) == 1
        child = registry.active[0]

        await orchestrator.shutdown()

        assert child.returncode is not None
        assert registry.active == []
        assert run.phase == SetupPhase.FAILED
        gateway.down.assert_awaited_once()
