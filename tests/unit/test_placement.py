"""
Unit tests for artifact placement (reback/backup/placement.py).
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from reback.backup.placement import (
    NothingToRestoreError,
    Placement,
    PlacementError,
    RemoteUploadError,
    remote_key,
)
from reback.backup.storage import S3Storage, StorageError


CREATED = datetime(2024, 5, 1, 2, 0, 0, tzinfo=timezone.utc)


def capture(placement, element, name, payload=b'payload'):
    staged = placement.stage(element, name)
    staged.write_bytes(payload)
    return placement.persist(element, name, staged, CREATED)


class TestPersist:
    """Test storing captured artifacts."""

    def test_local_and_remote(self, placement, make_element, mock_s3, backup_root):
        """Test an artifact lands in both stores under the same name."""
        element = make_element('db', remote_folder='prod/db')

        artifact = capture(placement, element, 'db_20240501_020000.sql.gz')

        assert artifact.local_path == backup_root / 'db' / 'db_20240501_020000.sql.gz'
        assert artifact.local_path.read_bytes() == b'payload'
        assert artifact.remote_key == 'prod/db/db_20240501_020000.sql.gz'
        assert artifact.created_at == CREATED
        assert mock_s3.Object('test-bucket', artifact.remote_key).content_length == 7

    def test_staging_file_is_hidden(self, placement, make_element, backup_root):
        staged = placement.stage(make_element('db'), 'db_20240501_020000.sql.gz')

        assert staged.parent == backup_root / 'db'
        assert staged.name.startswith('.')
        assert staged.name.endswith('.partial')

    def test_local_only(self, local_placement, make_element):
        artifact = capture(local_placement, make_element('db'), 'db_20240501_020000.sql.gz')

        assert artifact.local_path.exists()
        assert artifact.remote_key is None

    def test_local_retention_zero_removes_local_copy(self, placement, make_element, mock_s3, backup_root):
        """Test a zero local window keeps only the uploaded copy."""
        element = make_element('db', local=0, remote=30)

        artifact = capture(placement, element, 'db_20240501_020000.sql.gz')

        assert artifact.local_path is None
        assert artifact.remote_key == 'db/db_20240501_020000.sql.gz'
        assert list((backup_root / 'db').iterdir()) == []

    def test_upload_failure_keeps_local_copy(self, local_storage, make_element):
        """Test a failed upload raises RemoteUploadError carrying the local artifact."""
        remote = MagicMock(spec=S3Storage)
        remote.upload.side_effect = StorageError('S3 upload failed (AccessDenied)')
        placement = Placement(local_storage, remote)

        with pytest.raises(RemoteUploadError) as exc_info:
            capture(placement, make_element('db', local=0), 'db_20240501_020000.sql.gz')

        artifact = exc_info.value.artifact
        assert artifact.local_path.exists()
        assert artifact.remote_key is None

    def test_local_failure(self, local_placement, make_element, tmp_path):
        with pytest.raises(PlacementError, match='Failed to store'):
            local_placement.persist(make_element('db'), 'db_x.sql.gz', tmp_path / 'missing', CREATED)


class TestListing:
    """Test enumerating artifacts per store."""

    def test_list_local_sorted_and_filtered(self, local_placement, make_element, backup_root):
        """Test only this element's artifact names are listed, oldest first."""
        element = make_element('db')
        element_dir = backup_root / 'db'
        element_dir.mkdir()
        for name in ('db_20240103_000000.sql.gz', 'db_20240101_000000.sql.gz',
                     'db_old_20240101_000000.sql.gz', '.db_20240104_000000.sql.gz.partial', 'README'):
            (element_dir / name).write_bytes(b'x')

        artifacts = local_placement.list_local(element)

        assert [a.name for a in artifacts] == ['db_20240101_000000.sql.gz', 'db_20240103_000000.sql.gz']
        assert artifacts[0].created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert artifacts[0].local_path == element_dir / 'db_20240101_000000.sql.gz'

    def test_list_remote_ignores_prefix_sharing_titles(self, placement, make_element, mock_s3):
        """Test 'db' and 'db_old' sharing a folder do not see each other's artifacts."""
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='shared/db_20240102_000000.sql.gz', Body=b'a')
        bucket.put_object(Key='shared/db_old_20240101_000000.sql.gz', Body=b'b')

        db = make_element('db', remote_folder='shared')
        db_old = make_element('db_old', remote_folder='shared')

        assert [a.remote_key for a in placement.list_remote(db)] == ['shared/db_20240102_000000.sql.gz']
        assert [a.name for a in placement.list_remote(db_old)] == ['db_old_20240101_000000.sql.gz']

    def test_list_remote_without_remote(self, local_placement, make_element):
        assert local_placement.list_remote(make_element('db')) == []

    def test_list_remote_failure(self, local_storage, make_element):
        remote = MagicMock(spec=S3Storage)
        remote.list_objects.side_effect = StorageError('S3 list failed (AccessDenied)')

        with pytest.raises(PlacementError, match='AccessDenied'):
            Placement(local_storage, remote).list_remote(make_element('db'))

    def test_remote_key(self, make_element):
        assert remote_key(make_element('db', remote_folder='/a/b/'), 'n.sql.gz') == 'a/b/n.sql.gz'


class TestFetch:
    """Test resolving restore candidates."""

    def test_fetch_latest_remote(self, placement, make_element, mock_s3, backup_root):
        """Test the most recent remote artifact is downloaded under to_restore."""
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='db/db_20240101_000000.sql.gz', Body=b'old')
        bucket.put_object(Key='db/db_20240105_000000.sql.gz', Body=b'new')

        path = placement.fetch(make_element('db'))

        assert path == backup_root / 'to_restore' / 'db' / 'db_20240105_000000.sql.gz'
        assert path.read_bytes() == b'new'

    def test_fetch_with_selector(self, placement, make_element, mock_s3):
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='db/db_20240101_000000.sql.gz', Body=b'old')
        bucket.put_object(Key='db/db_20240105_000000.sql.gz', Body=b'new')

        path = placement.fetch(make_element('db'), 'db_20240101_000000.sql.gz')

        assert path.read_bytes() == b'old'

    def test_fetch_local_when_no_remote(self, local_placement, make_element, backup_root):
        element = make_element('db')
        capture(local_placement, element, 'db_20240501_020000.sql.gz')

        path = local_placement.fetch(element)

        assert path == backup_root / 'db' / 'db_20240501_020000.sql.gz'

    def test_release_removes_download(self, placement, make_element, mock_s3):
        mock_s3.Bucket('test-bucket').put_object(Key='db/db_20240105_000000.sql.gz', Body=b'new')
        element = make_element('db')
        path = placement.fetch(element)

        placement.release(element, path)

        assert not path.exists()

    def test_release_keeps_local_artifact(self, local_placement, make_element, backup_root):
        element = make_element('db')
        capture(local_placement, element, 'db_20240501_020000.sql.gz')
        path = local_placement.fetch(element)

        local_placement.release(element, path)

        assert path.exists()

    def test_nothing_to_restore(self, placement, make_element):
        with pytest.raises(NothingToRestoreError, match='No remote artifacts for db'):
            placement.fetch(make_element('db'))

    def test_selector_not_found(self, local_placement, make_element):
        element = make_element('db')
        capture(local_placement, element, 'db_20240501_020000.sql.gz')

        with pytest.raises(NothingToRestoreError, match='artifact db_20990101_000000.sql.gz'):
            local_placement.fetch(element, 'db_20990101_000000.sql.gz')


class TestDelete:

    def test_delete_both(self, placement, make_element, mock_s3):
        element = make_element('db')
        artifact = capture(placement, element, 'db_20240501_020000.sql.gz')

        placement.delete_local(artifact)
        placement.delete_remote(artifact)

        assert not artifact.local_path.exists()
        assert list(mock_s3.Bucket('test-bucket').objects.all()) == []
