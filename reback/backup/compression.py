"""
Archive and compression helpers for backup payloads.

- gzip_writer / open_gzip: gzip streams for SQL dumps
- write_tar_gz: stream a directory's contents as a gzip-compressed tar
- extract_tar_gz: unpack such an archive into a target directory
"""

import gzip
import tarfile
from fnmatch import fnmatch
from pathlib import Path
from typing import BinaryIO, Iterable, List


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


def gzip_writer(dest: BinaryIO) -> gzip.GzipFile:
    """
    Wrap a binary writable stream in a gzip compressor.

    Closing the returned object flushes the gzip trailer but leaves dest open.
    """
    return gzip.GzipFile(fileobj=dest, mode='wb')


def open_gzip(path) -> gzip.GzipFile:
    """Open a gzip file for streamed decompression."""
    return gzip.open(path, 'rb')


def should_exclude(path: str, exclude_patterns: Iterable[str]) -> bool:
    """
    Check if an archive member should be excluded.

    Patterns are glob patterns matched against the member path (relative to
    the archived directory) and against its basename. A leading '**/' also
    matches at any depth.

    Args:
        path: Member path inside the archive
        exclude_patterns: Glob patterns (e.g. *.pyc, __pycache__, .venv)

    Returns:
        True if path matches any exclude pattern
    """
    if not exclude_patterns:
        return False

    path = path[2:] if path.startswith('./') else path
    name = Path(path).name

    for pattern in exclude_patterns:
        if fnmatch(path, pattern) or fnmatch(name, pattern):
            return True
        if pattern.startswith('**/') and fnmatch(name, pattern[3:]):
            return True

    return False


def write_tar_gz(source_dir, dest: BinaryIO, exclude_patterns: List[str] = None) -> int:
    """
    Stream the contents of a directory into dest as a tar.gz archive.

    Members are stored relative to the directory root (like `tar -C dir .`),
    so restoring into any target directory recreates the same layout.

    Args:
        source_dir: Directory to archive
        dest: Binary writable file object
        exclude_patterns: Glob patterns to leave out

    Returns:
        Number of members written

    Raises:
        CompressionError: If the archive cannot be written
    """
    source = Path(source_dir)
    exclude_patterns = exclude_patterns or []
    count = 0

    def member_filter(tarinfo):
        nonlocal count
        if tarinfo.name != '.' and should_exclude(tarinfo.name, exclude_patterns):
            return None
        count += 1
        return tarinfo

    try:
        # 'w|gz' writes a non-seekable stream, so dest can be any file object
        with tarfile.open(fileobj=dest, mode='w|gz') as tar:
            tar.add(str(source), arcname='.', recursive=True, filter=member_filter)
    except (OSError, tarfile.TarError) as e:
        raise CompressionError(f"Failed to archive {source}: {e}")

    return count


def extract_tar_gz(archive_path, target_dir) -> List[str]:
    """
    Extract a tar.gz archive into target_dir (created if absent).

    Existing files with the same names are overwritten; other files in
    target_dir are left in place. Members that would land outside target_dir
    are refused by tarfile's 'data' filter.

    Returns:
        Names of the extracted members

    Raises:
        CompressionError: If the archive is unreadable or unsafe
    """
    target = Path(target_dir)

    try:
        target.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, 'r:gz') as tar:
            names = tar.getnames()
            tar.extractall(path=str(target), filter='data')
        return names
    except (OSError, tarfile.TarError) as e:
        raise CompressionError(f"Failed to extract {archive_path}: {e}")
