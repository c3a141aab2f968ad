from contextlib import contextmanager
from logging import Logger
from pathlib import Path
import shutil
import tempfile
import threading
from typing import Iterator, Optional

from sou import SouConfig
from sou.layer import PathLike


class CacheManagerError(Exception):
    """Base class for exceptions raised from this module."""

    pass


class CacheDirError(CacheManagerError):
    """The scratch directory couldn't be created."""

    def __init__(self, parent: PathLike, error: Exception):
        super().__init__(
            f"Unable to create a layer cache directory in {str(parent)!r}: {error}"
        )
        self.parent = str(parent)
        self.error = str(error)


class SharedLock:
    """A lock that can be held by many readers or by one writer"""

    def __init__(self):
        self.condition = threading.Condition(threading.Lock())
        self.readers = 0
        self.writer = False

    def acquire(self, exclusive: bool = False):
        """Acquire the lock, waiting while it is held in a conflicting mode

        Args:
            exclusive: lock for exclusive access
        """

        def busy() -> bool:
            return self.writer or (exclusive and self.readers > 0)

        with self.condition:
            self.condition.wait_for(lambda: not busy())
            if exclusive:
                self.writer = True
            else:
                self.readers += 1

    def release(self):
        """Release one hold on the lock"""
        with self.condition:
            if self.writer:
                self.writer = False
            elif self.readers:
                self.readers -= 1
            else:
                raise RuntimeError("release of an unlocked SharedLock")
            self.condition.notify_all()


class LockManager:
    """Context manager for a shared or exclusive hold on a SharedLock"""

    def __init__(self, lock: SharedLock, exclusive: bool = False):
        self.lock = lock
        self.exclusive = exclusive

    def __enter__(self) -> "LockManager":
        """Enter a lock context manager by acquiring the lock

        Returns:
            the LockManager object
        """
        self.lock.acquire(exclusive=self.exclusive)
        return self

    def __exit__(self, *exc):
        self.lock.release()


class LayerCache:
    """A content-addressed registry of materialized layer archives.

    Each decompressed layer is written once to a file in a private scratch
    directory and registered under the layer's content identifier (its
    "diff ID"), so later visits of the same layer reuse the file instead of
    decompressing the blob again.

    The scratch directory is created on first use, and `cleanup` removes it
    along with every registered file. One LayerCache is constructed at
    startup and passed to each Layer.
    """

    def __init__(self, options: SouConfig, logger: Logger):
        """Construct a LayerCache object.

        Nothing is created on disk until the first layer is extracted.

        Args:
            options: SouConfig configuration object
            logger: a brace-style Logger
        """
        self.logger: Logger = logger

        # Record where the scratch directory will be created, and its name
        # prefix.
        self.cache_root: Path = options.cache_dir
        self.prefix: str = options.cache_prefix

        # The scratch directory; None until first use and after cleanup
        self.directory: Optional[Path] = None

        # Map from layer diff ID to materialized archive file
        self.layers: dict[str, Path] = {}

        # Guards self.layers and self.sequence
        self.lock = SharedLock()

        # Serializes the creation and removal of the scratch directory
        self.directory_lock = threading.Lock()

        # Sequence number for scratch file names
        self.sequence = 0

        # Per diff ID guards to serialize concurrent materializations of
        # the same layer content.
        self.inflight: dict[str, threading.Lock] = {}
        self.inflight_lock = threading.Lock()

    def __contains__(self, diff_id: str) -> bool:
        with LockManager(self.lock):
            return diff_id in self.layers

    def __len__(self) -> int:
        with LockManager(self.lock):
            return len(self.layers)

    def lookup(self, diff_id: str) -> Optional[Path]:
        """Find the materialized archive for a layer

        Args:
            diff_id: layer content identifier

        Returns:
            the archive path, or None if the layer isn't cached
        """
        with LockManager(self.lock):
            return self.layers.get(diff_id)

    def insert(self, diff_id: str, path: PathLike):
        """Register the materialized archive for a layer

        Args:
            diff_id: layer content identifier
            path: the archive file, normally from scratch_file_path()
        """
        with LockManager(self.lock, exclusive=True):
            self.layers[diff_id] = Path(path)
        self.logger.debug("cached layer {} at {}", diff_id, path)

    def _init_directory(self) -> Path:
        """Create the scratch directory if it doesn't exist yet

        Raises:
            CacheDirError: the directory can't be created

        Returns:
            the scratch directory path
        """
        with self.directory_lock:
            if self.directory is None:
                try:
                    self.directory = Path(
                        tempfile.mkdtemp(prefix=self.prefix, dir=self.cache_root)
                    )
                except OSError as e:
                    raise CacheDirError(self.cache_root, e) from e
                self.logger.debug("created layer cache directory {}", self.directory)
            return self.directory

    def scratch_file_path(self) -> Path:
        """Return a new, unused file path in the scratch directory

        Raises:
            CacheDirError: the scratch directory can't be created

        Returns:
            a file path that no other caller has received
        """
        directory = self._init_directory()
        with LockManager(self.lock, exclusive=True):
            path = directory / f"layer-{self.sequence}.tar"
            self.sequence += 1
        return path

    @contextmanager
    def materializing(self, diff_id: str) -> Iterator[None]:
        """Serialize materializations of the same layer content

        A second thread materializing the same diff ID waits here until the
        first has finished, and then finds the layer in the cache.

        Args:
            diff_id: layer content identifier
        """
        with self.inflight_lock:
            guard = self.inflight.setdefault(diff_id, threading.Lock())
        with guard:
            yield

    def cleanup(self) -> list[str]:
        """Remove every cached layer file and the scratch directory.

        This is a "best effort" operation: a failure to remove one file is
        logged and recorded, and removal continues with the others. Calling
        this when nothing was cached, or a second time, does nothing.

        Returns:
            A description of each failure; empty if everything was removed
        """
        errors: list[str] = []
        with LockManager(self.lock, exclusive=True), self.directory_lock:
            count = len(self.layers)
            for diff_id, path in self.layers.items():
                try:
                    path.unlink()
                except OSError as e:
                    self.logger.error(
                        "failed to remove cached layer {} file {}: {}", diff_id, path, e
                    )
                    errors.append(f"{path}: {e}")
            self.layers.clear()

            if self.directory is not None:
                try:
                    shutil.rmtree(self.directory)
                except OSError as e:
                    self.logger.error(
                        "failed to remove cache directory {}: {}", self.directory, e
                    )
                    errors.append(f"{self.directory}: {e}")
                else:
                    self.logger.info(
                        "removed layer cache directory {} ({} layers)",
                        self.directory,
                        count,
                    )
                self.directory = None

        # Guards still held belong to materializations in progress
        with self.inflight_lock:
            self.inflight = {
                diff_id: guard
                for diff_id, guard in self.inflight.items()
                if guard.locked()
            }
        return errors
