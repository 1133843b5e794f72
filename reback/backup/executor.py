"""
Backup executor - orchestrates backup, restore and retention runs.

Backup, per element:
1. Capture: the element's adapter writes the payload into a staging file
2. Place: the staging file becomes the local artifact, uploaded if a remote is set
3. Retain: expired local and remote artifacts are deleted

Restore, per element:
1. Fetch: resolve and download the artifact to restore
2. Restore: the adapter replays it

Elements run on a bounded thread pool. Each worker returns its own outcomes;
only the calling thread builds the RunResult.
"""

import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from reback.config import Settings
from reback.models import Artifact, Element, ElementOutcome, Phase, RunResult, Status
from .containers import ContainerExec
from .naming import artifact_name, normalize_timestamp, utc_now
from .placement import NothingToRestoreError, Placement, PlacementError, RemoteUploadError
from .retention import RetentionManager
from .sources import CaptureError, RestoreError, create_source
from .storage import LocalStorage, S3Storage
from .tools import ToolRunner

logger = logging.getLogger(__name__)

BACKUP_PHASES = (Phase.CAPTURE, Phase.PLACE, Phase.RETAIN)
RESTORE_PHASES = (Phase.FETCH, Phase.RESTORE)
RETAIN_PHASES = (Phase.RETAIN,)


def create_placement(settings: Settings) -> Placement:
    """
    Build the Placement for a run from settings.

    Raises:
        StorageError: If the local root cannot be created or the S3 client fails
    """
    local = LocalStorage(settings.backup_dir)
    remote = None

    if settings.remote is not None:
        remote = S3Storage(
            access_key=settings.remote.access_key,
            secret_key=settings.remote.secret_key,
            bucket_name=settings.remote.bucket,
            region=settings.remote.region,
            endpoint_url=settings.remote.endpoint,
            path_style=settings.remote.path_style,
            timeout=settings.command_timeout
        )

    return Placement(local, remote)


def _describe(error: Exception) -> str:
    return str(error) or error.__class__.__name__


class BackupExecutor:
    """
    Runs backup, restore and retention passes over the configured elements.

    Args:
        settings: Loaded settings
        placement: Placement to use (built from settings if None)
        source_factory: Callable(element, tools=, containers=) returning an adapter
        clock: Callable returning the current time (UTC now if None)
    """

    def __init__(
        self,
        settings: Settings,
        placement: Optional[Placement] = None,
        source_factory: Callable = create_source,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.settings = settings
        self.placement = placement or create_placement(settings)
        self.source_factory = source_factory
        self.clock = clock or utc_now
        self.retention = RetentionManager(self.placement)
        self.tools = ToolRunner(timeout=settings.command_timeout)
        self.containers = ContainerExec(timeout=settings.command_timeout)

    def _now(self) -> datetime:
        return normalize_timestamp(self.clock())

    def _new_result(self, mode: str) -> RunResult:
        result = RunResult(mode)
        for rejected in self.settings.rejected:
            result.add(ElementOutcome(rejected.label, Phase.CONFIG, Status.FAILED, rejected.reason))
        return result

    def _enabled_elements(self) -> List[Element]:
        elements = []
        for element in self.settings.elements:
            if element.enabled:
                elements.append(element)
            else:
                logger.info(f"Skipping disabled element: {element.title}")
        return elements

    def _source(self, element: Element):
        return self.source_factory(element, tools=self.tools, containers=self.containers)

    def _run_parallel(self, result: RunResult, work: Callable, elements: Iterable[Element], phases) -> RunResult:
        elements = list(elements)
        if not elements:
            return result

        workers = min(self.settings.max_workers, len(elements))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='reback') as pool:
            futures = [pool.submit(self._guarded, work, element, phases) for element in elements]

            # Submission order keeps the result in element order
            for future in futures:
                result.extend(future.result())

        return result

    def _guarded(self, work: Callable, element: Element, phases) -> List[ElementOutcome]:
        outcomes = []
        try:
            work(element, outcomes)
        except Exception as e:
            logger.exception(f"Unexpected error while processing {element.title}")
            # Charge the failure to the first phase without a recorded outcome
            phase = phases[min(len(outcomes), len(phases) - 1)]
            outcomes.append(ElementOutcome(element.title, phase, Status.FAILED, _describe(e)))
        return outcomes

    # Backup

    def run_backup(self) -> RunResult:
        """
        Capture, place and retain every enabled element.

        Returns:
            RunResult with capture/place/retain outcomes per element
        """
        logger.info(f"Starting backup of {len(self.settings.elements)} elements")
        result = self._new_result('backup')
        self._run_parallel(result, self._backup_element, self._enabled_elements(), BACKUP_PHASES)
        self._log_result(result)
        return result

    def _backup_element(self, element: Element, outcomes: List[ElementOutcome]):
        title = element.title
        created_at = self._now()
        source = self._source(element)
        name = artifact_name(title, created_at, source.extension)

        logger.info(f"Backing up {title} ({element.kind.value}) as {name}")

        # Capture
        try:
            staged_path = self.placement.stage(element, name)
        except PlacementError as e:
            outcomes.append(ElementOutcome(title, Phase.CAPTURE, Status.FAILED, _describe(e)))
            return

        try:
            with open(staged_path, 'wb') as staged:
                source.capture(staged)
        except (CaptureError, OSError) as e:
            logger.error(f"Backup failed for {title}: {e}")
            staged_path.unlink(missing_ok=True)
            outcomes.append(ElementOutcome(title, Phase.CAPTURE, Status.FAILED, _describe(e)))
            return
        except BaseException:
            staged_path.unlink(missing_ok=True)
            raise

        outcomes.append(ElementOutcome(title, Phase.CAPTURE, Status.SUCCESS))

        # Place
        kept = None
        try:
            self.placement.persist(element, name, staged_path, created_at)
            outcomes.append(ElementOutcome(title, Phase.PLACE, Status.SUCCESS))
        except RemoteUploadError as e:
            logger.error(f"Failed to upload {name} for {title}: {e}")
            outcomes.append(ElementOutcome(title, Phase.PLACE, Status.PARTIAL, _describe(e)))
            kept = e.artifact
        except PlacementError as e:
            logger.error(f"Failed to store {name} for {title}: {e}")
            staged_path.unlink(missing_ok=True)
            outcomes.append(ElementOutcome(title, Phase.PLACE, Status.FAILED, _describe(e)))
            return

        # Retain; after a failed upload only the local store is pruned and the
        # new artifact, the only copy, stays regardless of the local window
        outcomes.append(self._enforce_retention(element, include_remote=kept is None, keep=kept))

    # Retention

    def run_retention(self) -> RunResult:
        """
        Enforce retention for every enabled element without capturing.

        Returns:
            RunResult with one retain outcome per element
        """
        logger.info("Starting retention policy enforcement")
        result = self._new_result('retention')
        self._run_parallel(result, self._retain_element, self._enabled_elements(), RETAIN_PHASES)
        self._log_result(result)
        return result

    def _retain_element(self, element: Element, outcomes: List[ElementOutcome]):
        outcomes.append(self._enforce_retention(element, include_remote=True))

    def _enforce_retention(self, element: Element, include_remote: bool, keep: Optional[Artifact] = None) -> ElementOutcome:
        title = element.title
        now = self._now()

        try:
            local_artifacts = self.placement.list_local(element)
            remote_artifacts = None
            if include_remote and self.placement.has_remote:
                remote_artifacts = self.placement.list_remote(element)
        except PlacementError as e:
            logger.error(f"Failed to list artifacts for {title}: {e}")
            return ElementOutcome(title, Phase.RETAIN, Status.FAILED, _describe(e))

        if keep is not None:
            local_artifacts = [a for a in local_artifacts if a.name != keep.name]

        deletions = self.retention.apply(element, local_artifacts, remote_artifacts, now)
        errors = [d.error for d in deletions if not d.deleted]

        if errors:
            return ElementOutcome(title, Phase.RETAIN, Status.FAILED, '; '.join(errors))

        deleted = len(deletions)
        if deleted:
            logger.info(f"Retention for {title}: deleted {deleted} outdated backups")
        return ElementOutcome(title, Phase.RETAIN, Status.SUCCESS)

    # Restore

    def run_restore(self, titles: Optional[Iterable[str]] = None, selector: Optional[str] = None) -> RunResult:
        """
        Fetch and restore elements.

        Args:
            titles: Element titles to restore; None restores every enabled element
            selector: Artifact name to restore instead of the most recent one

        Returns:
            RunResult with fetch/restore outcomes; unknown titles are fetch failures
        """
        result = self._new_result('restore')

        if titles is None:
            targets = self._enabled_elements()
        else:
            targets = []
            for title in dict.fromkeys(titles):
                element = self.settings.get_element(title)
                if element is None:
                    logger.error(f"No configured element named {title!r}")
                    result.add(ElementOutcome(title, Phase.FETCH, Status.FAILED, 'unknown element'))
                else:
                    targets.append(element)

        logger.info(f"Starting restore of {len(targets)} elements")

        work = functools.partial(self._restore_element, selector=selector)
        self._run_parallel(result, work, targets, RESTORE_PHASES)

        self._log_result(result)
        return result

    def _restore_element(self, element: Element, outcomes: List[ElementOutcome], selector: Optional[str] = None):
        title = element.title

        try:
            archive_path = self.placement.fetch(element, selector)
        except NothingToRestoreError as e:
            logger.error(str(e))
            outcomes.append(ElementOutcome(title, Phase.FETCH, Status.FAILED, _describe(e)))
            return
        except PlacementError as e:
            logger.error(f"Failed to fetch backup for {title}: {e}")
            outcomes.append(ElementOutcome(title, Phase.FETCH, Status.FAILED, _describe(e)))
            return

        outcomes.append(ElementOutcome(title, Phase.FETCH, Status.SUCCESS))

        logger.info(f"Restoring {title} from {archive_path.name}")
        try:
            self._source(element).restore(archive_path)
        except RestoreError as e:
            logger.error(f"Restore failed for {title}: {e}")
            outcomes.append(ElementOutcome(title, Phase.RESTORE, Status.FAILED, _describe(e)))
            return
        finally:
            self.placement.release(element, archive_path)

        logger.info(f"Restored {title}")
        outcomes.append(ElementOutcome(title, Phase.RESTORE, Status.SUCCESS))

    def _log_result(self, result: RunResult):
        logger.info(result.summary())
        for outcome in result.failures:
            logger.error(f"  {outcome}")


def run_backup(settings: Settings, **kwargs) -> RunResult:
    """Back up every enabled element in settings."""
    return BackupExecutor(settings, **kwargs).run_backup()


def run_restore(settings: Settings, titles: Optional[Iterable[str]] = None, selector: Optional[str] = None, **kwargs) -> RunResult:
    """Restore every enabled element, or only the given titles."""
    return BackupExecutor(settings, **kwargs).run_restore(titles, selector)


def run_retention(settings: Settings, **kwargs) -> RunResult:
    """Enforce retention for every enabled element."""
    return BackupExecutor(settings, **kwargs).run_retention()
