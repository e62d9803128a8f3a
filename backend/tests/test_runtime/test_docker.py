"""
Tests for Docker detection utilities

Platform-dependent lookups are exercised through patched paths and
explicit system names, so they run anywhere.
"""

from pathlib import Path
from unittest.mock import patch

import pytest


class TestFindDockerExecutable:
    """Tests for find_docker_executable and get_docker_command"""

    def test_returns_first_existing_path(self, tmp_path):
        from trh_launcher.runtime.docker import find_docker_executable

        missing = tmp_path / "missing" / "docker"
        present = tmp_path / "docker"
        present.write_text("")

        with patch("trh_launcher.runtime.docker.DOCKER_PATHS", [missing, present]):
            assert find_docker_executable() == str(present)

    def test_returns_none_when_nothing_exists(self, tmp_path):
        from trh_launcher.runtime.docker import find_docker_executable

        with patch("trh_launcher.runtime.docker.DOCKER_PATHS", [tmp_path / "nope"]):
            assert find_docker_executable() is None

    def test_command_falls_back_to_plain_docker(self):
        from trh_launcher.runtime.docker import get_docker_command

        with patch("trh_launcher.runtime.docker.find_docker_executable", return_value=None):
            assert get_docker_command() == ["docker"]

    def test_command_uses_full_path(self):
        from trh_launcher.runtime.docker import get_docker_command

        with patch(
            "trh_launcher.runtime.docker.find_docker_executable",
            return_value="/usr/local/bin/docker",
        ):
            assert get_docker_command() == ["/usr/local/bin/docker"]

    def test_search_order(self):
        """Test that the well-known locations are checked in the documented order"""
        from trh_launcher.runtime.docker import DOCKER_PATHS

        assert DOCKER_PATHS[:4] == [
            Path("/usr/local/bin/docker"),
            Path("/opt/homebrew/bin/docker"),
            Path("/usr/bin/docker"),
            Path("/Applications/Docker.app/Contents/Resources/bin/docker"),
        ]


class TestDockerEnv:
    """Tests for the extended PATH"""

    def test_extended_path_prefixes_well_known_dirs(self):
        import os

        from trh_launcher.runtime.docker import EXTRA_PATH_DIRS, get_extended_path

        result = get_extended_path("/custom/bin")
        parts = result.split(os.pathsep)
        assert parts[: len(EXTRA_PATH_DIRS)] == EXTRA_PATH_DIRS
        assert parts[-1] == "/custom/bin"

    def test_extended_path_without_current(self):
        import os

        from trh_launcher.runtime.docker import EXTRA_PATH_DIRS, get_extended_path

        assert get_extended_path("") == os.pathsep.join(EXTRA_PATH_DIRS)

    def test_docker_env_merges_extra(self):
        from trh_launcher.runtime.docker import get_docker_env

        env = get_docker_env({"ADMIN_EMAIL": "admin@example.com"})
        assert env["ADMIN_EMAIL"] == "admin@example.com"
        assert "/usr/local/bin" in env["PATH"]


class TestPlatformCommands:
    """Tests for install URLs and daemon launch commands"""

    @pytest.mark.parametrize("system", ["Darwin", "Windows", "Linux"])
    def test_install_url_per_platform(self, system):
        from trh_launcher.runtime.docker import INSTALL_URLS, get_install_url

        assert get_install_url(system) == INSTALL_URLS[system]

    def test_install_url_unknown_platform_falls_back(self):
        from trh_launcher.runtime.docker import INSTALL_URLS, get_install_url

        assert get_install_url("Plan9") == INSTALL_URLS["Linux"]

    def test_daemon_launch_macos(self):
        from trh_launcher.runtime.docker import get_daemon_launch_command

        assert get_daemon_launch_command("Darwin") == ["open", "-a", "Docker"]

    def test_daemon_launch_windows(self):
        from trh_launcher.runtime.docker import get_daemon_launch_command

        command = get_daemon_launch_command("Windows")
        assert command[0].endswith("Docker Desktop.exe")

    def test_daemon_launch_unknown(self):
        from trh_launcher.runtime.docker import get_daemon_launch_command

        assert get_daemon_launch_command("Plan9") is None
