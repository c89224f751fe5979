"""
Activation of rendered configuration against the live NGINX instance.

Artifacts are written to sites-available, linked into sites-enabled, and
NGINX is reloaded only after ``nginx -t`` passes. NGINX either runs in a
Docker container (commands go through ``docker exec``) or on the host.
Every step is bounded by ``nginx_operation_timeout``; a timeout is reported
as a failed result rather than raised.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import docker
from docker.errors import APIError, DockerException, NotFound

from config import settings
from core.health_checker import HealthChecker
from models.reload import ConfigArtifact, ReloadMethod, ReloadMode, ReloadResult

logger = logging.getLogger(__name__)


class NginxRunnerError(Exception):
    """NGINX could not be reached to run a command."""

    def __init__(self, message: str, error_type: str, suggestion: str | None = None):
        self.message = message
        self.error_type = error_type
        self.suggestion = suggestion
        super().__init__(message)


def _api_error(e: DockerException) -> NginxRunnerError:
    return NginxRunnerError(
        f"Docker API error: {e}",
        error_type="docker_api_error",
        suggestion="Check Docker daemon status and permissions",
    )


class ContainerRunner:
    """Runs NGINX commands inside its Docker container."""

    mode = ReloadMode.CONTAINER

    def __init__(self, container_name: Optional[str] = None):
        self.container_name = container_name or settings.nginx_container_name
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise NginxRunnerError(
                    f"Cannot connect to Docker daemon: {e}",
                    error_type="docker_unavailable",
                    suggestion="Ensure Docker daemon is running and socket is accessible",
                )
        return self._client

    def _get_container(self):
        try:
            return self.client.containers.get(self.container_name)
        except NotFound:
            raise NginxRunnerError(
                f"Container '{self.container_name}' not found",
                error_type="container_not_found",
                suggestion="Ensure the NGINX container is running",
            )
        except APIError as e:
            raise _api_error(e)

    async def run(self, command: list[str]) -> tuple[int, str, str]:
        """Execute a command in the container. Returns (exit_code, stdout, stderr)."""
        return await asyncio.to_thread(self._run_sync, command)

    def _run_sync(self, command: list[str]) -> tuple[int, str, str]:
        container = self._get_container()
        try:
            exec_result = container.exec_run(cmd=command, demux=True)
        except DockerException as e:
            raise _api_error(e)
        stdout, stderr = exec_result.output or (None, None)
        return (
            exec_result.exit_code,
            stdout.decode() if stdout else "",
            stderr.decode() if stderr else "",
        )

    async def restart(self, timeout: int = 10) -> None:
        logger.info(f"Restarting NGINX container with {timeout}s timeout")
        await asyncio.to_thread(self._restart_sync, timeout)

    def _restart_sync(self, timeout: int) -> None:
        container = self._get_container()
        try:
            container.restart(timeout=timeout)
        except DockerException as e:
            raise _api_error(e)
        logger.info("NGINX container restart completed")


class HostRunner:
    """Runs the local NGINX binary."""

    mode = ReloadMode.HOST

    def __init__(self, nginx_binary: Optional[str] = None):
        self.nginx_binary = nginx_binary or settings.nginx_binary

    async def run(self, command: list[str]) -> tuple[int, str, str]:
        """Execute a command, replacing a leading ``nginx`` with the configured binary."""
        if command and command[0] == "nginx":
            command = [self.nginx_binary, *command[1:]]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise NginxRunnerError(
                f"NGINX binary not found: {e}",
                error_type="binary_not_found",
                suggestion="Set NGINX_BINARY to the nginx executable path",
            )
        except OSError as e:
            raise NginxRunnerError(
                f"Cannot execute NGINX binary: {e}",
                error_type="binary_not_executable",
                suggestion="Check NGINX_BINARY points to an executable the service user may run",
            )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            raise
        return process.returncode, stdout.decode(), stderr.decode()

    async def restart(self, timeout: int = 10) -> None:
        raise NginxRunnerError(
            "Restart is not supported in host mode",
            error_type="unsupported",
            suggestion="Restart the NGINX service manually",
        )


def create_runner(mode: Optional[str] = None):
    """Build the runner for the configured reload mode."""
    mode = ReloadMode(mode or settings.nginx_reload_mode)
    if mode == ReloadMode.HOST:
        return HostRunner()
    return ContainerRunner()


def _write_file_atomic(path: Path, content: str, mode: int = 0o644) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        dir=str(path.parent),
        prefix=f".{path.name}.",
        delete=False,
    ) as tmp_file:
        tmp_file.write(content)
        tmp_file.flush()
        os.fsync(tmp_file.fileno())
        temp_path = Path(tmp_file.name)
    os.chmod(temp_path, mode)
    os.replace(temp_path, path)


class ReloadExecutor:
    """
    The only component that touches live NGINX state.

    ``activate`` writes an artifact, enables it and reloads. The reload
    step runs ``nginx -t`` first and never signals NGINX when the test
    fails, so a broken artifact is never loaded.
    """

    def __init__(
        self,
        runner=None,
        sites_available_dir: Optional[str] = None,
        sites_enabled_dir: Optional[str] = None,
        ssl_dir: Optional[str] = None,
        timeout: Optional[float] = None,
        restart_fallback: Optional[bool] = None,
        health_checker: Optional[HealthChecker] = None,
    ):
        self.runner = runner or create_runner()
        self.sites_available = Path(sites_available_dir or settings.sites_available_dir)
        self.sites_enabled = Path(sites_enabled_dir or settings.sites_enabled_dir)
        self.ssl_dir = Path(ssl_dir or settings.ssl_cert_dir)
        self.timeout = timeout if timeout is not None else settings.nginx_operation_timeout
        self.restart_fallback = (
            restart_fallback if restart_fallback is not None else settings.nginx_restart_fallback
        )
        if health_checker is None and settings.nginx_health_check_enabled:
            health_checker = HealthChecker()
        self.health_checker = health_checker

    @property
    def mode(self) -> ReloadMode:
        return self.runner.mode

    def config_path(self, name: str) -> Path:
        return self.sites_available / f"{name}.conf"

    def enabled_path(self, name: str) -> Path:
        return self.sites_enabled / f"{name}.conf"

    async def write(self, artifact: ConfigArtifact) -> None:
        """Write the artifact's config and TLS files to disk."""
        await asyncio.to_thread(self._write_sync, artifact)
        logger.debug(f"Wrote config artifact for {artifact.name}")

    def _write_sync(self, artifact: ConfigArtifact) -> None:
        for file_name, content in artifact.files.items():
            file_mode = 0o600 if file_name.endswith(".key") else 0o644
            _write_file_atomic(self.ssl_dir / file_name, content, file_mode)
        _write_file_atomic(self.config_path(artifact.name), artifact.content)

    async def enable(self, name: str) -> None:
        """Link the site's config into sites-enabled. Idempotent."""
        link = self.enabled_path(name)
        target = self.config_path(name)

        def do_enable():
            link.parent.mkdir(parents=True, exist_ok=True)
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(target)

        await asyncio.to_thread(do_enable)
        logger.debug(f"Enabled site config {name}")

    async def delete(self, name: str) -> None:
        """Remove the site's config, its enabled link and its TLS files."""
        def do_delete():
            self.enabled_path(name).unlink(missing_ok=True)
            self.config_path(name).unlink(missing_ok=True)
            (self.ssl_dir / f"{name}.crt").unlink(missing_ok=True)
            (self.ssl_dir / f"{name}.key").unlink(missing_ok=True)

        await asyncio.to_thread(do_delete)
        logger.info(f"Deleted site config {name}")

    async def activate(self, artifact: ConfigArtifact) -> ReloadResult:
        """Write, enable and reload. Filesystem errors are reported as a failed result."""
        try:
            await self.write(artifact)
            await self.enable(artifact.name)
        except OSError as e:
            logger.error(f"Failed to write config for {artifact.name}: {e}")
            return ReloadResult(success=False, mode=self.mode, error=f"Failed to write config: {e}")
        return await self.reload()

    async def reload(self) -> ReloadResult:
        """
        Test the configuration and gracefully reload NGINX.

        Falls back to a container restart when the reload signal fails
        after a passing config test.
        """
        try:
            return await asyncio.wait_for(self._reload(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"NGINX reload timed out after {self.timeout}s")
            return ReloadResult(
                success=False, mode=self.mode, error=f"NGINX operation timed out after {self.timeout}s"
            )
        except NginxRunnerError as e:
            logger.error(f"NGINX reload failed: {e.message}")
            return ReloadResult(success=False, mode=self.mode, error=e.message)

    async def _reload(self) -> ReloadResult:
        exit_code, stdout, stderr = await self.runner.run(["nginx", "-t"])
        if exit_code != 0:
            error = (stderr or stdout).strip() or f"nginx -t exited with {exit_code}"
            logger.warning(f"NGINX configuration test failed: {error}")
            return ReloadResult(success=False, mode=self.mode, error=f"Invalid nginx configuration: {error}")

        logger.info("Sending reload signal to NGINX")
        exit_code, stdout, stderr = await self.runner.run(["nginx", "-s", "reload"])
        method = ReloadMethod.RELOAD
        if exit_code != 0:
            error = (stderr or stdout).strip() or f"nginx -s reload exited with {exit_code}"
            if not (self.restart_fallback and self.mode == ReloadMode.CONTAINER):
                logger.error(f"NGINX reload failed: {error}")
                return ReloadResult(success=False, mode=self.mode, error=error)

            logger.warning(f"NGINX reload failed ({error}), restarting container")
            await self.runner.restart()
            method = ReloadMethod.RESTART

        if self.health_checker:
            healthy, health_error = await self.health_checker.verify()
            if not healthy:
                return ReloadResult(success=False, method=method, mode=self.mode, error=health_error)

        logger.info(f"NGINX {method.value} completed ({self.mode.value} mode)")
        return ReloadResult(success=True, method=method, mode=self.mode)


# Singleton instance
_reload_executor: ReloadExecutor | None = None


def get_reload_executor() -> ReloadExecutor:
    """Get the global reload executor instance."""
    global _reload_executor
    if _reload_executor is None:
        _reload_executor = ReloadExecutor()
    return _reload_executor
