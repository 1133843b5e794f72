"""
Shared pytest fixtures for reback tests.

This module provides fixtures for:
- Element and settings factories
- Settings files on disk
- Fake capture/restore adapters
- Mock fixtures for external services (S3)
- Temporary file fixtures
"""

import json
import threading

import pytest
import boto3
from moto import mock_aws

from reback.config import RemoteSettings, Settings
from reback.models import Element, ElementKind, FolderParams, PostgresParams
from reback.backup.placement import Placement
from reback.backup.sources import CaptureError, RestoreError, TOOL_FAILED
from reback.backup.storage import LocalStorage, S3Storage


TEST_BUCKET = 'test-bucket'


class FakeSource:
    """
    Stand-in adapter that writes a small payload instead of running a dump.

    Titles listed in `fail_capture` / `fail_restore` raise the adapter errors.
    """

    extension = '.sql.gz'

    def __init__(self, element, registry):
        self.element = element
        self.registry = registry

    def capture(self, dest):
        with self.registry.lock:
            self.registry.captured.append(self.element.title)
        if self.element.title in self.registry.fail_capture:
            raise CaptureError(f"{self.element.title}: pg_dump exited with status 1", TOOL_FAILED, 1, 'boom')
        dest.write(f"payload-{self.element.title}".encode())

    def restore(self, archive_path):
        with self.registry.lock:
            self.registry.restored.append((self.element.title, archive_path))
            self.registry.payloads[self.element.title] = archive_path.read_bytes()
        if self.element.title in self.registry.fail_restore:
            raise RestoreError(f"{self.element.title}: psql exited with status 3", TOOL_FAILED, 3, 'bad dump')


class FakeSourceRegistry:
    """Source factory with call recording, usable as BackupExecutor(source_factory=...)."""

    def __init__(self):
        self.lock = threading.Lock()
        self.captured = []
        self.restored = []
        self.payloads = {}
        self.fail_capture = set()
        self.fail_restore = set()

    def __call__(self, element, tools=None, containers=None):
        return FakeSource(element, self)


@pytest.fixture
def fake_sources():
    """Factory producing FakeSource adapters; configure failures on it."""
    return FakeSourceRegistry()


@pytest.fixture
def backup_root(tmp_path):
    """Local backup root directory."""
    root = tmp_path / 'backups'
    root.mkdir()
    return root


@pytest.fixture
def make_element():
    """
    Factory for Postgres elements (adapters are faked in executor tests).

    Usage: make_element('db', local=7, remote=30)
    """
    def _make(title, local=7, remote=30, remote_folder='', enabled=True):
        return Element(
            title=title,
            kind=ElementKind.POSTGRESQL,
            params=PostgresParams(db_name=title, db_user='backup', db_password='secret'),
            remote_folder=remote_folder,
            local_retention_days=local,
            remote_retention_days=remote,
            enabled=enabled,
        )
    return _make


@pytest.fixture
def folder_element(tmp_path):
    """
    Folder element over a small directory tree.

    Creates:
    - data/a.txt
    - data/sub/b.txt
    """
    data_dir = tmp_path / 'data'
    (data_dir / 'sub').mkdir(parents=True)
    (data_dir / 'a.txt').write_text('alpha')
    (data_dir / 'sub' / 'b.txt').write_text('bravo')

    return Element(
        title='files',
        kind=ElementKind.FOLDER,
        params=FolderParams(path=str(data_dir)),
        local_retention_days=30,
        remote_retention_days=90,
    )


@pytest.fixture
def remote_settings():
    return RemoteSettings(
        bucket=TEST_BUCKET,
        access_key='test_access_key',
        secret_key='test_secret_key',
        region='us-east-1',
    )


@pytest.fixture
def make_settings(backup_root):
    """Factory for Settings over the temporary backup root."""
    def _make(elements, remote=None, max_workers=3, rejected=()):
        return Settings(
            backup_dir=backup_root,
            elements=tuple(elements),
            remote=remote,
            rejected=tuple(rejected),
            max_workers=max_workers,
            command_timeout=60,
        )
    return _make


@pytest.fixture
def settings_data(tmp_path):
    """Decoded settings document with one folder element and no bucket."""
    data_dir = tmp_path / 'site'
    data_dir.mkdir()
    (data_dir / 'index.html').write_text('<html></html>')

    return {
        'backup_dir': str(tmp_path / 'backups'),
        'elements': [
            {
                'element_title': 'site',
                'backup_retention_days': 7,
                's3_backup_retention_days': 30,
                'params': {
                    'type': 'folder',
                    'path': str(data_dir),
                },
            }
        ],
    }


@pytest.fixture
def settings_file(tmp_path, settings_data):
    """Settings document written to tmp_path/settings.json."""
    path = tmp_path / 'settings.json'
    path.write_text(json.dumps(settings_data))
    return path


@pytest.fixture
def clean_env(monkeypatch):
    """Remove REBACK_* overrides from the environment."""
    for name in ('REBACK_SETTINGS', 'REBACK_BACKUP_DIR', 'REBACK_S3_ACCESS',
                 'REBACK_S3_SECRET', 'REBACK_LOG_DIR', 'REBACK_LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket=TEST_BUCKET)

        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    """S3Storage pointed at the mocked test bucket."""
    return S3Storage(
        access_key='test_access_key',
        secret_key='test_secret_key',
        bucket_name=TEST_BUCKET,
        region='us-east-1'
    )


@pytest.fixture
def local_storage(backup_root):
    return LocalStorage(backup_root)


@pytest.fixture
def placement(local_storage, s3_storage):
    """Placement with both stores (S3 mocked)."""
    return Placement(local_storage, s3_storage)


@pytest.fixture
def local_placement(local_storage):
    """Placement without a remote store."""
    return Placement(local_storage)


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pyc (should be excluded in tests)
    """
    (tmp_path / 'test_file1.txt').write_text('Test content 1')
    (tmp_path / 'test_file2.log').write_text('Test log content')

    nested_dir = tmp_path / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (tmp_path / 'test_file.pyc').write_bytes(b'compiled python')

    return tmp_path
