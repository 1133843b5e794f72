"""
Runs dump/restore programs inside Docker containers.

Uses the Docker Engine exec API through the docker SDK:
- dumps stream the exec's stdout into a destination file object
- restores copy the artifact into the container with put_archive, then run
  the restore command against that file
"""

import logging
import posixpath
import tarfile
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, NotFound

from .compression import gzip_writer
from .tools import ToolError, STDERR_TAIL_BYTES

logger = logging.getLogger(__name__)

RESTORE_DIR = '/tmp'


class ContainerUnavailableError(Exception):
    """Raised when a container does not exist, is not running, or Docker is unreachable."""
    pass


class ContainerExec:
    """
    Executes commands inside named, running containers.

    Args:
        client: docker.DockerClient (created from the environment if None)
        timeout: Docker API timeout in seconds, applied to every call
    """

    def __init__(self, client=None, timeout: Optional[float] = None):
        self._client = client
        self._client_lock = threading.Lock()
        self.timeout = timeout

    @property
    def client(self):
        # Shared by pool workers; only one client may be built
        with self._client_lock:
            if self._client is None:
                try:
                    if self.timeout:
                        self._client = docker.from_env(timeout=int(self.timeout))
                    else:
                        self._client = docker.from_env()
                except DockerException as e:
                    raise ContainerUnavailableError(f"Docker daemon unavailable: {e}")
            return self._client

    def get_running(self, name: str):
        """
        Look up a running container by name.

        Raises:
            ContainerUnavailableError: If missing, stopped, or Docker fails
        """
        try:
            container = self.client.containers.get(name)
        except NotFound:
            raise ContainerUnavailableError(f"Container not found: {name}")
        except DockerException as e:
            raise ContainerUnavailableError(f"Failed to inspect container {name}: {e}")

        if container.status != 'running':
            raise ContainerUnavailableError(f"Container {name} is not running (status: {container.status})")

        return container

    def _exec(self, container, cmd: List[str], environment: Optional[Dict[str, str]], on_stdout=None) -> str:
        """Run cmd in container, passing stdout chunks to on_stdout. Returns the stderr tail."""
        api = self.client.api
        stderr_tail = b''

        try:
            exec_id = api.exec_create(
                container.id,
                cmd,
                stdout=True,
                stderr=True,
                environment=environment or None
            )['Id']

            for stdout, stderr in api.exec_start(exec_id, stream=True, demux=True):
                if stdout and on_stdout is not None:
                    on_stdout(stdout)
                if stderr:
                    stderr_tail = (stderr_tail + stderr)[-STDERR_TAIL_BYTES:]

            exit_code = api.exec_inspect(exec_id).get('ExitCode')
        except NotFound:
            raise ContainerUnavailableError(f"Container {container.name} disappeared during exec")
        except (APIError, DockerException) as e:
            raise ToolError(cmd[0], None, f"docker exec failed: {e}")

        tail = stderr_tail.decode('utf-8', errors='replace').strip()
        if exit_code != 0:
            raise ToolError(cmd[0], exit_code, tail)
        return tail

    def run_dump(
        self,
        container_name: str,
        cmd: List[str],
        dest: BinaryIO,
        environment: Optional[Dict[str, str]] = None,
        compress: bool = False
    ) -> None:
        """
        Run a dump program in a container and stream its stdout into dest.

        Raises:
            ContainerUnavailableError: If the container is not usable
            ToolError: If the program exits non-zero
        """
        container = self.get_running(container_name)
        logger.debug(f"Running {cmd[0]} in container {container_name}")

        if compress:
            with gzip_writer(dest) as gz:
                self._exec(container, cmd, environment, on_stdout=gz.write)
        else:
            self._exec(container, cmd, environment, on_stdout=dest.write)

    def copy_into(self, container, source_path, target_dir: str = RESTORE_DIR) -> str:
        """
        Copy a local file into a container directory.

        Returns:
            Path of the file inside the container
        """
        source = Path(source_path)

        with tempfile.TemporaryDirectory(prefix='reback_put_') as temp_dir:
            tar_path = Path(temp_dir) / 'payload.tar'
            with tarfile.open(tar_path, 'w') as tar:
                tar.add(str(source), arcname=source.name)

            try:
                with open(tar_path, 'rb') as fh:
                    if not container.put_archive(target_dir, fh):
                        raise ToolError('put_archive', None, f"failed to copy {source.name} into {container.name}")
            except NotFound:
                raise ContainerUnavailableError(f"Container {container.name} disappeared during copy")
            except (APIError, DockerException) as e:
                raise ToolError('put_archive', None, str(e))

        return posixpath.join(target_dir, source.name)

    def run_restore(
        self,
        container_name: str,
        archive_path,
        build_command: Callable[[str], List[str]],
        environment: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Copy an artifact into a container and run the restore command on it.

        Args:
            container_name: Target container
            archive_path: Local artifact file
            build_command: Called with the in-container path; returns the command
            environment: Extra environment for the restore command

        Raises:
            ContainerUnavailableError: If the container is not usable
            ToolError: If copying or the restore program fails
        """
        container = self.get_running(container_name)
        remote_path = self.copy_into(container, archive_path)

        try:
            self._exec(container, build_command(remote_path), environment)
        finally:
            try:
                self._exec(container, ['rm', '-f', remote_path], None)
            except (ToolError, ContainerUnavailableError) as e:
                logger.warning(f"Failed to remove {remote_path} from {container_name}: {e}")
