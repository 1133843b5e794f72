"""
Deterministic artifact naming.

Format: {element_title}_{YYYYMMDD_HHMMSS}{extension}

The local filename and the remote key share the same name, so both stores can
be listed independently and still be matched by (title, created_at).
"""

import re
from datetime import datetime, timezone
from typing import Optional

TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

EXTENSIONS = ('.sql.gz', '.archive.gz', '.tar.gz')


def utc_now() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def normalize_timestamp(created_at: datetime) -> datetime:
    """
    Convert a timestamp to aware UTC with second precision.

    Naive datetimes are taken as UTC.
    """
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at.astimezone(timezone.utc).replace(microsecond=0)


def artifact_name(title: str, created_at: datetime, extension: str) -> str:
    """
    Generate the artifact name for an element capture.

    Args:
        title: Element title
        created_at: Capture timestamp
        extension: Kind extension, including the leading dot (e.g. '.tar.gz')

    Returns:
        Artifact name (without folder or directory)
    """
    timestamp = normalize_timestamp(created_at).strftime(TIMESTAMP_FORMAT)
    return f"{title}_{timestamp}{extension}"


def parse_artifact_name(title: str, name: str) -> Optional[datetime]:
    """
    Recover the capture timestamp from an artifact name.

    Only names produced by artifact_name() for this exact title match; a name
    belonging to another title that happens to share the prefix (e.g. 'db'
    and 'db_old') does not.

    Returns:
        Aware UTC datetime, or None if the name is not an artifact of title
    """
    pattern = r'^' + re.escape(title) + r'_(\d{8}_\d{6})(\.[A-Za-z0-9]+(?:\.[A-Za-z0-9]+)*)$'
    match = re.match(pattern, name)
    if not match or match.group(2) not in EXTENSIONS:
        return None

    try:
        parsed = datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return parsed.replace(tzinfo=timezone.utc)
