"""
Capture/restore adapters, one per element kind.

Supports:
- PostgresSource / PostgresDockerSource: pg_dump / psql
- MySQLSource / MySQLDockerSource: mysqldump / mysql
- MongoSource / MongoDockerSource: mongodump / mongorestore
- FolderSource: tar.gz of a directory

Adapters only produce and consume payloads. Placement and retention are
handled by the executor.
"""

import logging
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

from reback.models import Element, ElementKind
from .compression import CompressionError, extract_tar_gz, open_gzip, write_tar_gz
from .containers import ContainerExec, ContainerUnavailableError
from .tools import ToolError, ToolRunner

logger = logging.getLogger(__name__)

TOOL_FAILED = 'tool_failed'
CONTAINER_UNAVAILABLE = 'container_unavailable'
SOURCE_NOT_FOUND = 'source_not_found'


class SourceError(Exception):
    """Base class for adapter failures."""

    def __init__(self, message: str, kind: str, exit_code: Optional[int] = None, stderr_tail: str = ''):
        super().__init__(message)
        self.kind = kind
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class CaptureError(SourceError):
    """Raised when a backup payload cannot be produced."""
    pass


class RestoreError(SourceError):
    """Raised when a backup payload cannot be replayed."""
    pass


def _translate(error: Exception, error_cls, title: str) -> SourceError:
    if isinstance(error, ContainerUnavailableError):
        return error_cls(f"{title}: {error}", CONTAINER_UNAVAILABLE)
    if isinstance(error, ToolError):
        return error_cls(f"{title}: {error}", TOOL_FAILED, error.exit_code, error.stderr_tail)
    return error_cls(f"{title}: {error}", SOURCE_NOT_FOUND)


class Source(ABC):
    """
    Capture/restore contract for one element.

    capture() writes the backup payload into a binary stream; restore()
    replays a stored artifact file into the live target.
    """

    extension = '.sql.gz'

    def __init__(self, element: Element):
        self.element = element
        self.params = element.params

    @abstractmethod
    def capture(self, dest: BinaryIO) -> None:
        """
        Raises:
            CaptureError: On tool, container or source failure
        """

    @abstractmethod
    def restore(self, archive_path) -> None:
        """
        Raises:
            RestoreError: On tool, container or source failure
        """


class NativeSource(Source):
    """Database adapter running dump/restore programs on this host."""

    # True when the dump program writes plain output that we gzip ourselves
    compress = True

    def __init__(self, element: Element, tools: Optional[ToolRunner] = None):
        super().__init__(element)
        self.tools = tools or ToolRunner()

    def environment(self) -> Dict[str, str]:
        return {}

    @abstractmethod
    def dump_command(self) -> List[str]:
        pass

    @abstractmethod
    def restore_command(self) -> List[str]:
        pass

    def capture(self, dest: BinaryIO) -> None:
        try:
            self.tools.run_dump(self.dump_command(), dest, self.environment(), compress=self.compress)
        except ToolError as e:
            raise _translate(e, CaptureError, self.element.title)

    def restore(self, archive_path) -> None:
        if not Path(archive_path).is_file():
            raise RestoreError(f"{self.element.title}: artifact not found: {archive_path}", SOURCE_NOT_FOUND)

        opener = open_gzip if self.compress else (lambda p: open(p, 'rb'))
        try:
            with opener(archive_path) as source:
                self.tools.run_feed(self.restore_command(), source, self.environment())
        except ToolError as e:
            raise _translate(e, RestoreError, self.element.title)


class DockerSource(Source):
    """Database adapter running dump/restore programs inside a container."""

    compress = True

    def __init__(self, element: Element, containers: Optional[ContainerExec] = None):
        super().__init__(element)
        self.containers = containers or ContainerExec()

    def environment(self) -> Dict[str, str]:
        return {}

    @abstractmethod
    def dump_command(self) -> List[str]:
        pass

    @abstractmethod
    def restore_command(self, path: str) -> List[str]:
        """Restore command reading the artifact copied to `path` inside the container."""

    def capture(self, dest: BinaryIO) -> None:
        try:
            self.containers.run_dump(
                self.params.docker_container,
                self.dump_command(),
                dest,
                self.environment(),
                compress=self.compress
            )
        except (ToolError, ContainerUnavailableError) as e:
            raise _translate(e, CaptureError, self.element.title)

    def restore(self, archive_path) -> None:
        if not Path(archive_path).is_file():
            raise RestoreError(f"{self.element.title}: artifact not found: {archive_path}", SOURCE_NOT_FOUND)

        try:
            self.containers.run_restore(
                self.params.docker_container,
                archive_path,
                self.restore_command,
                self.environment()
            )
        except (ToolError, ContainerUnavailableError) as e:
            raise _translate(e, RestoreError, self.element.title)


class PostgresSource(NativeSource):
    """
    PostgreSQL over the network.

    Dumps are plain SQL taken with --clean --if-exists, so a restore drops and
    recreates the dumped objects in the target database.
    """

    def environment(self):
        return {'PGPASSWORD': self.params.db_password}

    def _connection_args(self):
        return [
            '-h', self.params.db_host,
            '-p', str(self.params.db_port),
            '-U', self.params.db_user,
            '--no-password',
        ]

    def dump_command(self):
        return ['pg_dump', *self._connection_args(), '--clean', '--if-exists', self.params.db_name]

    def restore_command(self):
        return [
            'psql', *self._connection_args(),
            '--quiet', '-v', 'ON_ERROR_STOP=1',
            '-d', self.params.db_name,
        ]


class PostgresDockerSource(DockerSource):
    """PostgreSQL inside a container, reached through the container's local socket."""

    def environment(self):
        return {'PGPASSWORD': self.params.db_password}

    def dump_command(self):
        return ['pg_dump', '-U', self.params.db_user, '--clean', '--if-exists', self.params.db_name]

    def restore_command(self, path):
        script = 'gunzip -c {} | psql --quiet -v ON_ERROR_STOP=1 -U {} -d {}'.format(
            shlex.quote(path),
            shlex.quote(self.params.db_user),
            shlex.quote(self.params.db_name)
        )
        return ['sh', '-c', script]


class MySQLSource(NativeSource):
    """
    MySQL/MariaDB over the network.

    mysqldump output drops and recreates each table on restore.
    """

    def environment(self):
        return {'MYSQL_PWD': self.params.db_password}

    def _connection_args(self):
        return [
            '-h', self.params.db_host,
            '-P', str(self.params.db_port),
            '-u', self.params.db_user,
        ]

    def dump_command(self):
        return [
            'mysqldump', *self._connection_args(),
            '--single-transaction', '--routines', '--triggers',
            self.params.db_name,
        ]

    def restore_command(self):
        return ['mysql', *self._connection_args(), self.params.db_name]


class MySQLDockerSource(DockerSource):
    """MySQL/MariaDB inside a container."""

    def environment(self):
        return {'MYSQL_PWD': self.params.db_password}

    def dump_command(self):
        return [
            'mysqldump', '-u', self.params.db_user,
            '--single-transaction', '--routines', '--triggers',
            self.params.db_name,
        ]

    def restore_command(self, path):
        script = 'gunzip -c {} | mysql -u {} {}'.format(
            shlex.quote(path),
            shlex.quote(self.params.db_user),
            shlex.quote(self.params.db_name)
        )
        return ['sh', '-c', script]


def _mongo_auth_args(params) -> List[str]:
    args = []
    if params.db_user:
        args += [
            '--username', params.db_user,
            '--password', params.db_password,
            '--authenticationDatabase', params.auth_db,
        ]
    return args


class MongoSource(NativeSource):
    """
    MongoDB over the network.

    mongodump writes a gzip archive itself; restores run with --drop, so
    collections present in the archive replace the existing ones.
    """

    extension = '.archive.gz'
    compress = False

    def _base_args(self):
        args = ['--host', self.params.db_host, '--port', str(self.params.db_port)]
        return args + _mongo_auth_args(self.params)

    def dump_command(self):
        args = ['mongodump', *self._base_args()]
        if self.params.db_name:
            args += ['--db', self.params.db_name]
        return args + ['--archive', '--gzip']

    def restore_command(self):
        args = ['mongorestore', *self._base_args()]
        if self.params.db_name:
            args += ['--nsInclude', f'{self.params.db_name}.*']
        return args + ['--archive', '--gzip', '--drop']


class MongoDockerSource(DockerSource):
    """MongoDB inside a container."""

    extension = '.archive.gz'
    compress = False

    def dump_command(self):
        args = ['mongodump', *_mongo_auth_args(self.params)]
        if self.params.db_name:
            args += ['--db', self.params.db_name]
        return args + ['--archive', '--gzip']

    def restore_command(self, path):
        args = ['mongorestore', *_mongo_auth_args(self.params)]
        if self.params.db_name:
            args += ['--nsInclude', f'{self.params.db_name}.*']
        return args + [f'--archive={path}', '--gzip', '--drop']


class FolderSource(Source):
    """
    Plain directory, archived as tar.gz.

    Restoring overwrites files with the same names and leaves other files
    in the target directory untouched.
    """

    extension = '.tar.gz'

    def capture(self, dest: BinaryIO) -> None:
        source_path = Path(self.params.path).expanduser()

        if not source_path.exists():
            raise CaptureError(f"{self.element.title}: path does not exist: {self.params.path}", SOURCE_NOT_FOUND)
        if not source_path.is_dir():
            raise CaptureError(f"{self.element.title}: not a directory: {self.params.path}", SOURCE_NOT_FOUND)

        try:
            count = write_tar_gz(source_path, dest, list(self.params.exclude_patterns))
        except CompressionError as e:
            raise CaptureError(f"{self.element.title}: {e}", SOURCE_NOT_FOUND)

        logger.debug(f"Archived {count} entries from {source_path}")

    def restore(self, archive_path) -> None:
        if not Path(archive_path).is_file():
            raise RestoreError(f"{self.element.title}: artifact not found: {archive_path}", SOURCE_NOT_FOUND)

        try:
            extract_tar_gz(archive_path, Path(self.params.path).expanduser())
        except CompressionError as e:
            raise RestoreError(f"{self.element.title}: {e}", TOOL_FAILED)


SOURCE_TYPES = {
    ElementKind.POSTGRESQL: PostgresSource,
    ElementKind.POSTGRESQL_DOCKER: PostgresDockerSource,
    ElementKind.MYSQL: MySQLSource,
    ElementKind.MYSQL_DOCKER: MySQLDockerSource,
    ElementKind.MONGODB: MongoSource,
    ElementKind.MONGODB_DOCKER: MongoDockerSource,
    ElementKind.FOLDER: FolderSource,
}


def create_source(
    element: Element,
    tools: Optional[ToolRunner] = None,
    containers: Optional[ContainerExec] = None,
    timeout: Optional[float] = None
) -> Source:
    """
    Factory function to create the adapter for an element.

    Args:
        element: Element to capture or restore
        tools: Runner for native programs (shared across elements)
        containers: Docker exec helper (shared across elements)
        timeout: Deadline in seconds for helpers built here when none is passed

    Returns:
        Source instance for the element's kind

    Raises:
        ValueError: If the element kind has no adapter
    """
    source_cls = SOURCE_TYPES.get(element.kind)
    if source_cls is None:
        raise ValueError(f"Invalid element type: {element.kind}")

    if issubclass(source_cls, NativeSource):
        return source_cls(element, tools=tools or ToolRunner(timeout=timeout))
    if issubclass(source_cls, DockerSource):
        return source_cls(element, containers=containers or ContainerExec(timeout=timeout))
    return source_cls(element)
