"""
Retention policy enforcement for backups.

Local and remote windows are evaluated independently against the capture
timestamps encoded in artifact names. A retention of 0 days keeps nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from reback.models import Artifact, Element
from .naming import normalize_timestamp
from .placement import Placement, PlacementError

logger = logging.getLogger(__name__)

LOCAL = 'local'
REMOTE = 'remote'


class RetentionError(Exception):
    """Raised when an expired artifact cannot be deleted."""
    pass


@dataclass(frozen=True)
class DeletionOutcome:
    artifact: Artifact
    store: str
    error: Optional[str] = None

    @property
    def deleted(self) -> bool:
        return self.error is None


def is_expired(created_at: datetime, now: datetime, retention_days: int) -> bool:
    """
    Check whether an artifact is past its retention window.

    Expired when retention_days is 0, or when it is strictly older than
    retention_days days.
    """
    if retention_days == 0:
        return True
    age = normalize_timestamp(now) - normalize_timestamp(created_at)
    return age > timedelta(days=retention_days)


def select_expired(artifacts: Iterable[Artifact], now: datetime, retention_days: int) -> List[Artifact]:
    """Artifacts expired under the window, in input order."""
    return [a for a in artifacts if is_expired(a.created_at, now, retention_days)]


class RetentionManager:
    """
    Deletes expired artifacts of an element from each store.

    Deletion errors are recorded per artifact; enforcement continues with
    the remaining artifacts.
    """

    def __init__(self, placement: Placement):
        self.placement = placement

    def apply(
        self,
        element: Element,
        local_artifacts: List[Artifact],
        remote_artifacts: Optional[List[Artifact]],
        now: datetime
    ) -> List[DeletionOutcome]:
        """
        Enforce an element's two retention windows.

        Args:
            element: Element whose windows apply
            local_artifacts: Current local artifacts of the element
            remote_artifacts: Current remote artifacts, or None to skip the remote store
            now: Reference time

        Returns:
            One DeletionOutcome per expired artifact
        """
        outcomes = []

        expired_local = select_expired(local_artifacts, now, element.local_retention_days)
        logger.debug(
            f"{element.title}: local retention {element.local_retention_days} days, "
            f"{len(expired_local)}/{len(local_artifacts)} expired"
        )
        for artifact in expired_local:
            outcomes.append(self._delete(artifact, LOCAL, self.placement.delete_local))

        if remote_artifacts is not None:
            expired_remote = select_expired(remote_artifacts, now, element.remote_retention_days)
            logger.debug(
                f"{element.title}: remote retention {element.remote_retention_days} days, "
                f"{len(expired_remote)}/{len(remote_artifacts)} expired"
            )
            for artifact in expired_remote:
                outcomes.append(self._delete(artifact, REMOTE, self.placement.delete_remote))

        return outcomes

    def _delete(self, artifact: Artifact, store: str, delete) -> DeletionOutcome:
        try:
            delete(artifact)
        except (PlacementError, OSError) as e:
            error = RetentionError(f"Failed to delete {store} artifact {artifact.name}: {e}")
            logger.error(str(error))
            return DeletionOutcome(artifact, store, str(error))

        logger.info(f"Deleted outdated {store} backup: {artifact.name}")
        return DeletionOutcome(artifact, store)
