"""
Settings loading.

Settings come from a JSON file (settings.json by default) with a few
environment overrides for paths and credentials.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from reback.models import ConfigError, Element

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = 'settings.json'
DEFAULT_MAX_WORKERS = 3
DEFAULT_COMMAND_TIMEOUT = 4 * 60 * 60
DEFAULT_SCHEDULE = '0 2 * * *'

PATH_STYLES = ('path', 'virtual-host')


@dataclass(frozen=True)
class RemoteSettings:
    """S3-compatible bucket connection"""

    bucket: str
    access_key: str
    secret_key: str
    region: str = 'us-east-1'
    endpoint: Optional[str] = None
    path_style: bool = False

    def __repr__(self):
        # Keep credentials out of logs
        return f'<RemoteSettings bucket={self.bucket} region={self.region} endpoint={self.endpoint}>'


@dataclass(frozen=True)
class RejectedElement:
    """An element entry excluded from the run, with the reason"""

    label: str
    reason: str


@dataclass(frozen=True)
class Settings:
    """Run configuration, immutable once loaded"""

    backup_dir: Path
    elements: Tuple[Element, ...]
    remote: Optional[RemoteSettings] = None
    rejected: Tuple[RejectedElement, ...] = ()
    max_workers: int = DEFAULT_MAX_WORKERS
    command_timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT
    schedule_cron: str = DEFAULT_SCHEDULE
    log_dir: Optional[Path] = None
    log_level: str = 'INFO'
    source_path: Optional[Path] = field(default=None, compare=False)

    def get_element(self, title: str) -> Optional[Element]:
        for element in self.elements:
            if element.title == title:
                return element
        return None

    @property
    def titles(self) -> List[str]:
        return [element.title for element in self.elements]


def resolve_settings_path(path=None) -> Path:
    """
    Find the settings file.

    Order: explicit path, REBACK_SETTINGS, ./settings.json
    """
    if path:
        return Path(path)
    return Path(os.environ.get('REBACK_SETTINGS') or DEFAULT_SETTINGS_FILE)


def _parse_remote(data: Dict[str, Any]) -> Optional[RemoteSettings]:
    bucket = data.get('s3_bucket')
    if not bucket:
        return None

    access_key = os.environ.get('REBACK_S3_ACCESS') or data.get('s3_access')
    secret_key = os.environ.get('REBACK_S3_SECRET') or data.get('s3_secret')
    if not access_key or not secret_key:
        raise ConfigError("s3_access and s3_secret are required when s3_bucket is set")

    path_style = data.get('s3_path_style') or 'virtual-host'
    if path_style not in PATH_STYLES:
        raise ConfigError(f"Invalid s3_path_style: {path_style!r}. Valid options: {list(PATH_STYLES)}")

    return RemoteSettings(
        bucket=bucket,
        access_key=access_key,
        secret_key=secret_key,
        region=data.get('s3_region') or 'us-east-1',
        endpoint=data.get('s3_endpoint') or None,
        path_style=path_style == 'path',
    )


def _parse_elements(raw_elements) -> Tuple[List[Element], List[RejectedElement]]:
    if not isinstance(raw_elements, list) or not raw_elements:
        raise ConfigError("elements must be a non-empty list")

    elements = []
    rejected = []

    for index, raw in enumerate(raw_elements):
        title = raw.get('element_title') if isinstance(raw, dict) else None
        label = title if isinstance(title, str) and title else f"elements[{index}]"

        try:
            elements.append(Element.from_dict(raw))
        except ConfigError as e:
            logger.error(f"Invalid element {label}, excluded from run: {e}")
            rejected.append(RejectedElement(label, str(e)))

    seen = set()
    duplicates = []
    for element in elements:
        if element.title in seen and element.title not in duplicates:
            duplicates.append(element.title)
        seen.add(element.title)

    if duplicates:
        raise ConfigError(f"Duplicate element_title values: {duplicates}")

    return elements, rejected


def parse_settings(data: Dict[str, Any], source_path: Optional[Path] = None) -> Settings:
    """
    Build Settings from a decoded settings document.

    Invalid elements are excluded and recorded in Settings.rejected.

    Raises:
        ConfigError: If the document as a whole is unusable (no backup_dir,
            duplicate titles, no valid element, bad remote settings)
    """
    if not isinstance(data, dict):
        raise ConfigError("Settings must be a JSON object")

    backup_dir = os.environ.get('REBACK_BACKUP_DIR') or data.get('backup_dir')
    if not backup_dir:
        raise ConfigError("backup_dir is required")

    remote = _parse_remote(data)
    elements, rejected = _parse_elements(data.get('elements'))

    if not elements:
        reasons = '; '.join(f"{r.label}: {r.reason}" for r in rejected)
        raise ConfigError(f"No valid elements to process ({reasons})")

    if remote is None:
        for element in elements:
            if element.local_retention_days == 0:
                logger.warning(
                    f"{element.title}: local retention is 0 days and no remote is configured; "
                    f"its backups will be deleted at the end of each run"
                )

    max_workers = data.get('max_workers', DEFAULT_MAX_WORKERS)
    if isinstance(max_workers, bool) or not isinstance(max_workers, int) or max_workers < 1:
        raise ConfigError(f"max_workers must be an integer >= 1, got {max_workers!r}")

    command_timeout = data.get('command_timeout', DEFAULT_COMMAND_TIMEOUT)
    if command_timeout is not None:
        if isinstance(command_timeout, bool) or not isinstance(command_timeout, (int, float)) or command_timeout <= 0:
            raise ConfigError(f"command_timeout must be a positive number or null, got {command_timeout!r}")

    log_dir = os.environ.get('REBACK_LOG_DIR') or data.get('log_dir')
    log_level = (os.environ.get('REBACK_LOG_LEVEL') or data.get('log_level') or 'INFO').upper()

    return Settings(
        backup_dir=Path(backup_dir).expanduser(),
        elements=tuple(elements),
        remote=remote,
        rejected=tuple(rejected),
        max_workers=max_workers,
        command_timeout=command_timeout,
        schedule_cron=data.get('schedule') or DEFAULT_SCHEDULE,
        log_dir=Path(log_dir).expanduser() if log_dir else None,
        log_level=log_level,
        source_path=source_path,
    )


def load_settings(path=None) -> Settings:
    """
    Read and validate the settings file.

    Raises:
        ConfigError: If the file cannot be read or parsed, or is invalid
    """
    settings_path = resolve_settings_path(path)

    try:
        with open(settings_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Settings file not found: {settings_path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing JSON file {settings_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read settings file {settings_path}: {e}")

    return parse_settings(data, source_path=settings_path)
