"""
Runs external dump/restore programs (pg_dump, mysqldump, mongodump, ...).

The program's stdout is streamed into a destination file object on dump, and
a source file object is streamed into its stdin on restore. A non-zero exit
status is reported as ToolError with the tail of stderr.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from typing import BinaryIO, Dict, List, Optional

from .compression import gzip_writer

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
STDERR_TAIL_BYTES = 4096


class ToolError(Exception):
    """Raised when an external program fails or exits non-zero."""

    def __init__(self, command: str, exit_code: Optional[int], stderr_tail: str = ''):
        self.command = command
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail

        message = f"{command} exited with status {exit_code}"
        if stderr_tail:
            message += f": {stderr_tail}"
        super().__init__(message)


class ToolTimeoutError(ToolError):
    """Raised when an external program is killed after its deadline."""

    def __init__(self, command: str, timeout: float, stderr_tail: str = ''):
        super().__init__(command, None, stderr_tail)
        self.timeout = timeout
        self.args = (f"{command} killed after {timeout}s deadline",)


def read_tail(fileobj, limit: int = STDERR_TAIL_BYTES) -> str:
    """Return the last `limit` bytes of a binary file object, decoded."""
    fileobj.seek(0, os.SEEK_END)
    size = fileobj.tell()
    fileobj.seek(max(0, size - limit))
    return fileobj.read().decode('utf-8', errors='replace').strip()


class ToolRunner:
    """
    Executes dump/restore programs as child processes.

    Each call is bounded by `timeout` seconds (None means no deadline); the
    process is killed when the deadline passes.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def _environment(self, env: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = dict(os.environ)
        if env:
            merged.update(env)
        return merged

    def _start(self, argv: List[str], env, **kwargs) -> subprocess.Popen:
        if shutil.which(argv[0]) is None and not os.path.isfile(argv[0]):
            raise ToolError(argv[0], None, 'executable not found')

        try:
            return subprocess.Popen(argv, env=self._environment(env), **kwargs)
        except OSError as e:
            raise ToolError(argv[0], None, str(e))

    def _start_deadline(self, proc: subprocess.Popen, expired: threading.Event):
        if not self.timeout:
            return None

        def kill():
            expired.set()
            proc.kill()

        timer = threading.Timer(self.timeout, kill)
        timer.daemon = True
        timer.start()
        return timer

    def _finish(self, argv, proc, stderr_file, timer, expired):
        try:
            exit_code = proc.wait()
        finally:
            if timer:
                timer.cancel()

        tail = read_tail(stderr_file)

        if expired.is_set():
            raise ToolTimeoutError(argv[0], self.timeout, tail)
        if exit_code != 0:
            raise ToolError(argv[0], exit_code, tail)

        if tail:
            logger.debug(f"{argv[0]} stderr: {tail}")

    def run_dump(
        self,
        argv: List[str],
        dest: BinaryIO,
        env: Optional[Dict[str, str]] = None,
        compress: bool = False
    ) -> None:
        """
        Run a dump program and stream its stdout into dest.

        Args:
            argv: Program and arguments
            dest: Binary writable file object
            env: Extra environment variables (e.g. PGPASSWORD)
            compress: Gzip the stream on the fly

        Raises:
            ToolError: If the program cannot start or exits non-zero
            ToolTimeoutError: If the deadline is exceeded
        """
        logger.debug(f"Running {argv[0]}")

        with tempfile.TemporaryFile() as stderr_file:
            proc = self._start(argv, env, stdout=subprocess.PIPE, stderr=stderr_file)
            expired = threading.Event()
            timer = self._start_deadline(proc, expired)

            try:
                if compress:
                    with gzip_writer(dest) as gz:
                        shutil.copyfileobj(proc.stdout, gz, CHUNK_SIZE)
                else:
                    shutil.copyfileobj(proc.stdout, dest, CHUNK_SIZE)
            except Exception:
                proc.kill()
                proc.wait()
                if timer:
                    timer.cancel()
                raise
            finally:
                proc.stdout.close()

            self._finish(argv, proc, stderr_file, timer, expired)

    def run_feed(
        self,
        argv: List[str],
        source: BinaryIO,
        env: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Run a restore program with source streamed into its stdin.

        Raises:
            ToolError: If the program cannot start or exits non-zero
            ToolTimeoutError: If the deadline is exceeded
        """
        logger.debug(f"Running {argv[0]}")

        with tempfile.TemporaryFile() as stderr_file:
            proc = self._start(
                argv, env,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=stderr_file
            )
            expired = threading.Event()
            timer = self._start_deadline(proc, expired)

            try:
                shutil.copyfileobj(source, proc.stdin, CHUNK_SIZE)
            except BrokenPipeError:
                # Program exited early; its exit status explains why
                pass
            except Exception:
                proc.kill()
                proc.wait()
                if timer:
                    timer.cancel()
                raise
            finally:
                try:
                    proc.stdin.close()
                except BrokenPipeError:
                    pass

            self._finish(argv, proc, stderr_file, timer, expired)
