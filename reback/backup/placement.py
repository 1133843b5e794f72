"""
Storage placement: where each artifact lives and under which name.

Local layout:  {backup_dir}/{element_title}/{artifact_name}
Remote layout: {remote_folder}/{artifact_name}
Restore downloads go to {backup_dir}/to_restore/{element_title}/{artifact_name}
and are removed once the restore is over.

Listing always queries the stores; nothing is cached between calls.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from reback.models import Artifact, Element
from .naming import normalize_timestamp, parse_artifact_name
from .storage import LocalStorage, S3Storage, StorageError

logger = logging.getLogger(__name__)

RESTORE_DIR_NAME = 'to_restore'


class PlacementError(Exception):
    """Raised when an artifact cannot be written, listed, fetched or deleted."""
    pass


class RemoteUploadError(PlacementError):
    """
    Raised when the local copy was written but the upload failed.

    The locally persisted artifact is available as `artifact`.
    """

    def __init__(self, message: str, artifact: Artifact):
        super().__init__(message)
        self.artifact = artifact


class NothingToRestoreError(PlacementError):
    """Raised when no stored artifact matches a restore request."""
    pass


def remote_key(element: Element, name: str) -> str:
    return f"{element.remote_folder}/{name}"


class Placement:
    """
    Persists, enumerates, fetches and deletes artifacts in both stores.

    Args:
        local: Local store (always present)
        remote: Remote store, or None when no bucket is configured
    """

    def __init__(self, local: LocalStorage, remote: Optional[S3Storage] = None):
        self.local = local
        self.remote = remote

    @property
    def has_remote(self) -> bool:
        return self.remote is not None

    def stage(self, element: Element, name: str) -> Path:
        """
        Path capture writes into before persist().

        The hidden '.partial' name never parses as an artifact, so an
        interrupted capture is invisible to listing and retention.
        """
        try:
            return self.local.element_dir(element.title) / f".{name}.partial"
        except StorageError as e:
            raise PlacementError(str(e))

    def persist(self, element: Element, name: str, staged_path, created_at: datetime) -> Artifact:
        """
        Store a captured artifact locally and, if configured, remotely.

        With local_retention_days == 0 the local copy is removed as soon as
        the upload succeeds.

        Returns:
            Artifact with its local_path and/or remote_key

        Raises:
            RemoteUploadError: Local copy written, upload failed
            PlacementError: Local write failed
        """
        created_at = normalize_timestamp(created_at)

        try:
            local_path = self.local.store(staged_path, element.title, name)
        except StorageError as e:
            raise PlacementError(f"Failed to store {name} locally: {e}")

        logger.info(f"Stored locally: {local_path}")
        artifact = Artifact(element.title, created_at, name, local_path=local_path)

        if not self.has_remote:
            return artifact

        key = remote_key(element, name)
        try:
            self.remote.upload(local_path, key)
        except StorageError as e:
            raise RemoteUploadError(f"Failed to upload {name}: {e}", artifact)

        logger.info(f"Uploaded to remote: {key}")

        if element.local_retention_days == 0:
            try:
                self.local.delete(local_path)
                logger.info(f"Removed local copy of {name} (local retention is 0 days)")
                local_path = None
            except StorageError as e:
                logger.warning(f"Failed to remove local copy of {name}: {e}")

        return Artifact(element.title, created_at, name, local_path=local_path, remote_key=key)

    def list_local(self, element: Element) -> List[Artifact]:
        """
        Artifacts of an element in the local store, oldest first.

        Raises:
            PlacementError: If the directory cannot be listed
        """
        try:
            files = self.local.list_files(element.title)
        except StorageError as e:
            raise PlacementError(str(e))

        artifacts = []
        for file_info in files:
            created_at = parse_artifact_name(element.title, file_info['name'])
            if created_at is None:
                continue
            artifacts.append(Artifact(element.title, created_at, file_info['name'], local_path=file_info['path']))

        return sorted(artifacts, key=lambda a: (a.created_at, a.name))

    def list_remote(self, element: Element) -> List[Artifact]:
        """
        Artifacts of an element in the remote store, oldest first.

        Returns an empty list when no remote is configured.

        Raises:
            PlacementError: If listing fails
        """
        if not self.has_remote:
            return []

        prefix = f"{element.remote_folder}/{element.title}_"
        try:
            objects = self.remote.list_objects(prefix)
        except StorageError as e:
            raise PlacementError(str(e))

        artifacts = []
        for obj in objects:
            key = obj['Key']
            name = key[len(element.remote_folder) + 1:]
            created_at = parse_artifact_name(element.title, name)
            if created_at is None:
                continue
            artifacts.append(Artifact(element.title, created_at, name, remote_key=key))

        return sorted(artifacts, key=lambda a: (a.created_at, a.name))

    def delete_local(self, artifact: Artifact):
        if artifact.local_path is None:
            return
        try:
            self.local.delete(artifact.local_path)
        except StorageError as e:
            raise PlacementError(str(e))

    def delete_remote(self, artifact: Artifact):
        if artifact.remote_key is None or not self.has_remote:
            return
        try:
            self.remote.delete(artifact.remote_key)
        except StorageError as e:
            raise PlacementError(str(e))

    def restore_path(self, element: Element, name: str) -> Path:
        return self.local.base_path / RESTORE_DIR_NAME / element.title / name

    def release(self, element: Element, path: Path):
        """
        Remove a fetched artifact once its restore is over.

        Only downloads under to_restore are removed; a local artifact
        returned in place by fetch() is left to retention.
        """
        path = Path(path)
        if path.parent != self.local.base_path / RESTORE_DIR_NAME / element.title:
            return
        try:
            path.unlink(missing_ok=True)
            logger.debug(f"Removed downloaded copy {path}")
        except OSError as e:
            logger.warning(f"Failed to remove downloaded copy {path}: {e}")

    def fetch(self, element: Element, selector: Optional[str] = None) -> Path:
        """
        Resolve and fetch the artifact to restore.

        Uses the remote store when configured (downloading the object),
        otherwise the local store (returning the stored file in place).

        Args:
            element: Element to restore
            selector: Artifact name to pick; None picks the most recent

        Returns:
            Local path of the artifact file

        Raises:
            NothingToRestoreError: If no artifact matches
            PlacementError: If listing or download fails
        """
        if self.has_remote:
            candidates = self.list_remote(element)
            store = 'remote'
        else:
            candidates = self.list_local(element)
            store = 'local'

        if selector is not None:
            candidates = [a for a in candidates if a.name == selector]

        if not candidates:
            wanted = f"artifact {selector}" if selector else 'artifacts'
            raise NothingToRestoreError(f"No {store} {wanted} for {element.title}")

        artifact = candidates[-1]
        logger.info(f"Selected {store} artifact {artifact.name} for {element.title}")

        if not self.has_remote:
            return artifact.local_path

        try:
            return self.remote.download(artifact.remote_key, self.restore_path(element, artifact.name))
        except StorageError as e:
            raise PlacementError(f"Failed to fetch {artifact.remote_key}: {e}")
