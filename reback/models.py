"""
Data model for reback.

- Element: one configured backup unit, with its per-kind parameters
- Artifact: one stored backup file/object of an element
- ElementOutcome / RunResult: per-element results of a run
"""

import os
from dataclasses import dataclass, field, fields, MISSING
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class ConfigError(Exception):
    """Raised when settings or an element definition are invalid."""
    pass


class ElementKind(str, Enum):
    """Element kinds, as written in the ``type`` key of element params."""

    POSTGRESQL = 'postgresql'
    POSTGRESQL_DOCKER = 'postgresql_docker'
    MONGODB = 'mongodb'
    MONGODB_DOCKER = 'mongodb_docker'
    MYSQL = 'mysql'
    MYSQL_DOCKER = 'mysql_docker'
    FOLDER = 'folder'


@dataclass(frozen=True)
class PostgresParams:
    db_name: str
    db_user: str
    db_password: str
    db_host: str = 'localhost'
    db_port: int = 5432


@dataclass(frozen=True)
class PostgresDockerParams:
    docker_container: str
    db_name: str
    db_user: str
    db_password: str


@dataclass(frozen=True)
class MongoParams:
    db_host: str = 'localhost'
    db_port: int = 27017
    db_name: Optional[str] = None
    db_user: Optional[str] = None
    db_password: Optional[str] = None
    auth_db: str = 'admin'


@dataclass(frozen=True)
class MongoDockerParams:
    docker_container: str
    db_name: Optional[str] = None
    db_user: Optional[str] = None
    db_password: Optional[str] = None
    auth_db: str = 'admin'


@dataclass(frozen=True)
class MySQLParams:
    db_name: str
    db_user: str
    db_password: str
    db_host: str = 'localhost'
    db_port: int = 3306


@dataclass(frozen=True)
class MySQLDockerParams:
    docker_container: str
    db_name: str
    db_user: str
    db_password: str


@dataclass(frozen=True)
class FolderParams:
    path: str
    exclude_patterns: Tuple[str, ...] = ()


PARAMS_TYPES = {
    ElementKind.POSTGRESQL: PostgresParams,
    ElementKind.POSTGRESQL_DOCKER: PostgresDockerParams,
    ElementKind.MONGODB: MongoParams,
    ElementKind.MONGODB_DOCKER: MongoDockerParams,
    ElementKind.MYSQL: MySQLParams,
    ElementKind.MYSQL_DOCKER: MySQLDockerParams,
    ElementKind.FOLDER: FolderParams,
}

# Characters that would turn a title into more than one path segment
_TITLE_FORBIDDEN = {'/', '\\'} | ({os.sep, os.altsep} - {None})


def _check_retention(name: str, value: Any) -> int:
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if value < 0:
        raise ConfigError(f"{name} must be >= 0, got {value}")
    return value


def build_params(raw: Dict[str, Any]):
    """
    Build the params object for an element from its JSON ``params`` dict.

    Args:
        raw: Dict with a ``type`` key plus the fields of that kind

    Returns:
        (ElementKind, params instance)

    Raises:
        ConfigError: If the type is unknown or a field is missing/invalid
    """
    if not isinstance(raw, dict):
        raise ConfigError("params must be an object with a 'type' key")

    kind_value = raw.get('type')
    try:
        kind = ElementKind(kind_value)
    except ValueError:
        valid = [k.value for k in ElementKind]
        raise ConfigError(f"Unknown element type: {kind_value!r}. Valid options: {valid}")

    params_cls = PARAMS_TYPES[kind]
    values = {}

    for f in fields(params_cls):
        value = raw.get(f.name)
        if value is None:
            if f.default is MISSING:
                raise ConfigError(f"Element type '{kind.value}' requires field '{f.name}'")
            continue

        if f.name == 'db_port':
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"db_port must be an integer, got {value!r}")
        elif f.name == 'exclude_patterns':
            if not isinstance(value, (list, tuple)) or not all(isinstance(p, str) for p in value):
                raise ConfigError("exclude_patterns must be a list of strings")
            value = tuple(value)
        elif not isinstance(value, str) or not value:
            raise ConfigError(f"Field '{f.name}' must be a non-empty string")

        values[f.name] = value

    params = params_cls(**values)

    if kind in (ElementKind.MONGODB, ElementKind.MONGODB_DOCKER):
        if params.db_user and not params.db_password:
            raise ConfigError("db_password is required when db_user is set")

    return kind, params


@dataclass(frozen=True)
class Element:
    """
    One configured backup/restore unit.

    ``title`` is used as a path segment (local subdirectory) and as the
    artifact name prefix, so it must be a single, non-empty segment.
    """

    title: str
    kind: ElementKind
    params: Any
    remote_folder: str = ''
    local_retention_days: int = 0
    remote_retention_days: int = 0
    enabled: bool = True

    def __post_init__(self):
        if not isinstance(self.title, str) or not self.title.strip():
            raise ConfigError("element_title must be a non-empty string")
        if self.title in ('.', '..') or any(c in self.title for c in _TITLE_FORBIDDEN):
            raise ConfigError(f"element_title must not contain path separators: {self.title!r}")

        _check_retention('backup_retention_days', self.local_retention_days)
        _check_retention('s3_backup_retention_days', self.remote_retention_days)

        expected = PARAMS_TYPES.get(self.kind)
        if expected is None or not isinstance(self.params, expected):
            raise ConfigError(f"Params for element '{self.title}' do not match type {self.kind}")

        # frozen, so normalize via object.__setattr__
        folder = (self.remote_folder or self.title).strip('/')
        object.__setattr__(self, 'remote_folder', folder or self.title)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'Element':
        """
        Create an Element from one entry of the settings ``elements`` list.

        Raises:
            ConfigError: If the entry is invalid
        """
        if not isinstance(raw, dict):
            raise ConfigError("element must be an object")
        if raw.get('params') is None:
            raise ConfigError(f"No backup parameters provided for element {raw.get('element_title')!r}")

        kind, params = build_params(raw['params'])

        enabled = raw.get('enabled', True)
        if not isinstance(enabled, bool):
            raise ConfigError("enabled must be true or false")

        remote_folder = raw.get('s3_folder') or ''
        if not isinstance(remote_folder, str):
            raise ConfigError("s3_folder must be a string")

        # Retention windows have no default
        for key in ('backup_retention_days', 's3_backup_retention_days'):
            if raw.get(key) is None:
                raise ConfigError(f"{key} is required")

        return cls(
            title=raw.get('element_title'),
            kind=kind,
            params=params,
            remote_folder=remote_folder,
            local_retention_days=raw['backup_retention_days'],
            remote_retention_days=raw['s3_backup_retention_days'],
            enabled=enabled,
        )

    def __repr__(self):
        return f'<Element {self.title} type={self.kind.value} enabled={self.enabled}>'


@dataclass(frozen=True)
class Artifact:
    """One backup output of an element, in the local store, the remote store, or both."""

    element_title: str
    created_at: datetime
    name: str
    local_path: Optional[Path] = None
    remote_key: Optional[str] = None

    def __repr__(self):
        return f'<Artifact {self.name} local={self.local_path is not None} remote={self.remote_key is not None}>'


class Phase(str, Enum):
    CONFIG = 'config'
    CAPTURE = 'capture'
    PLACE = 'place'
    RETAIN = 'retain'
    FETCH = 'fetch'
    RESTORE = 'restore'


class Status(str, Enum):
    SUCCESS = 'success'
    PARTIAL = 'partial'
    FAILED = 'failed'


@dataclass(frozen=True)
class ElementOutcome:
    title: str
    phase: Phase
    status: Status
    reason: Optional[str] = None

    def __str__(self):
        text = f"{self.title}: {self.phase.value} {self.status.value}"
        if self.reason:
            text += f" ({self.reason})"
        return text


@dataclass
class RunResult:
    """Ordered outcomes of one backup, restore or retention run."""

    mode: str
    outcomes: List[ElementOutcome] = field(default_factory=list)

    def add(self, outcome: ElementOutcome):
        self.outcomes.append(outcome)

    def extend(self, outcomes):
        self.outcomes.extend(outcomes)

    @property
    def ok(self) -> bool:
        return all(o.status is Status.SUCCESS for o in self.outcomes)

    @property
    def failures(self) -> List[ElementOutcome]:
        return [o for o in self.outcomes if o.status is not Status.SUCCESS]

    def failed_titles(self) -> List[str]:
        titles = []
        for outcome in self.failures:
            if outcome.title not in titles:
                titles.append(outcome.title)
        return titles

    def for_title(self, title: str) -> List[ElementOutcome]:
        return [o for o in self.outcomes if o.title == title]

    def summary(self) -> str:
        titles = {o.title for o in self.outcomes}
        return (
            f"{self.mode} finished. "
            f"Elements: {len(titles)}, "
            f"Failed: {len(self.failed_titles())}"
        )
