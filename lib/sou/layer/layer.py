from dataclasses import dataclass
from enum import auto, Enum
from logging import Logger
import posixpath
import shutil
import time
from typing import Callable, IO, Optional

import humanize

from sou import SouConfig
from sou.common.utils import Cleanup
from sou.layer import ProgressFunc
from sou.layer.blob import Blob
from sou.layer.cache_manager import CacheManagerError, LayerCache
from sou.layer.tarfs import (
    clean_path,
    DirectoryHandle,
    Handle,
    IsADirectory,
    NotADirectory,
    TarFS,
    TarFSError,
)

# Progress reported at the milestones of a layer initialization
PROGRESS_START = 0.0
PROGRESS_CACHED = 0.5
PROGRESS_COPY_START = 0.2
PROGRESS_COPY_END = 0.8
PROGRESS_DONE = 1.0


class LayerError(Exception):
    """Base class for exceptions raised from this module."""

    pass


class LayerNotInitialized(LayerError):
    """The layer filesystem was used before initialize() succeeded."""

    def __init__(self, diff_id: str):
        super().__init__(f"Layer {diff_id} is not initialized")
        self.diff_id = diff_id


class LayerExtractError(LayerError):
    """The layer couldn't be extracted into the cache."""

    def __init__(self, diff_id: str, stage: str, error: Exception):
        super().__init__(f"Failed to {stage} for layer {diff_id}: {error}")
        self.diff_id = diff_id
        self.stage = stage
        self.error = str(error)


class LayerState(Enum):
    """The materialization state of a Layer"""

    UNINITIALIZED = auto()
    CACHE_HIT = auto()
    EXTRACTING = auto()
    READY = auto()
    FAILED = auto()


@dataclass
class File:
    """A directory listing item"""

    name: str
    is_dir: bool
    path: str
    size: int
    mode: str
    mod_time: str


class ProgressReader:
    """Report the progress of reading a stream of known approximate size

    The fraction read is reported at most once per interval, clamped to
    [0, 1], and 1.0 is reported once the end of the stream is reached.
    """

    def __init__(
        self,
        stream: IO[bytes],
        total: int,
        progress: ProgressFunc,
        interval: float = SouConfig.DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Construct a ProgressReader

        Args:
            stream: the byte stream to read
            total: the expected number of bytes
            progress: progress callback
            interval: minimum seconds between two progress reports
            clock: time source, in seconds
        """
        self.stream = stream
        self.total = total
        self.current = 0
        self.progress = progress
        self.interval = interval
        self.clock = clock
        self.last_update = clock()
        self.finished = False

    def read(self, size: int = -1) -> bytes:
        data = self.stream.read(size)
        if data:
            self.current += len(data)
            if self.total > 0:
                now = self.clock()
                if now - self.last_update >= self.interval:
                    self.progress(min(self.current / self.total, 1.0))
                    self.last_update = now
        elif not self.finished:
            self.finished = True
            self.progress(1.0)
        return data


class _Progress:
    """Forward progress to a callback, never going backwards"""

    def __init__(self, callback: Optional[ProgressFunc]):
        self.callback = callback
        self.last = -1.0

    def __call__(self, value: float):
        value = min(max(value, 0.0), 1.0)
        if value < self.last:
            return
        self.last = value
        if self.callback:
            self.callback(value)

    def band(self, low: float, high: float) -> ProgressFunc:
        """A callback mapping [0, 1] into [low, high]"""
        return lambda fraction: self(low * (1.0 - fraction) + high * fraction)


class Layer:
    """One image layer and its materialized filesystem.

    The filesystem is produced by `initialize`, either from an archive
    already in the LayerCache or by decompressing the layer blob into a new
    cache file; afterwards `open`, `list_directory` and `read_file` serve
    its content.
    """

    def __init__(
        self,
        blob: Blob,
        cache: LayerCache,
        logger: Logger,
        progress_interval: float = SouConfig.DEFAULT_PROGRESS_INTERVAL,
        buffer_size: int = shutil.COPY_BUFSIZE,
    ):
        """Construct a Layer

        Args:
            blob: the layer content source
            cache: the shared layer cache
            logger: a brace-style Logger
            progress_interval: minimum seconds between copy progress reports
            buffer_size: copy buffer size for extraction
        """
        self.blob = blob
        self.cache = cache
        self.logger = logger
        self.progress_interval = progress_interval
        self.buffer_size = buffer_size
        self.state = LayerState.UNINITIALIZED
        self.fs: Optional[TarFS] = None

    @classmethod
    def create(
        cls, blob: Blob, cache: LayerCache, options: SouConfig, logger: Logger
    ) -> "Layer":
        """Construct a Layer with the configured extraction settings"""
        return cls(
            blob,
            cache,
            logger,
            progress_interval=options.progress_interval,
            buffer_size=options.copy_buffer_size,
        )

    @property
    def diff_id(self) -> str:
        return self.blob.diff_id

    @property
    def size(self) -> int:
        return self.blob.size

    def initialize(self, progress: Optional[ProgressFunc] = None):
        """Prepare the layer filesystem, reporting progress

        Progress is non-decreasing and ends at 1.0 on success. Calling this
        on a ready layer only reports 1.0.

        Args:
            progress: a callback receiving fractions in [0, 1]

        Raises:
            LayerExtractError: the layer couldn't be extracted; a later call
                may retry
        """
        report = _Progress(progress)
        if self.fs is not None:
            report(PROGRESS_DONE)
            return

        with self.cache.materializing(self.diff_id):
            if self.fs is not None:
                report(PROGRESS_DONE)
                return
            report(PROGRESS_START)
            if not self._initialize_from_cache(report):
                self._create_new_layer(report)

    def _initialize_from_cache(self, report: _Progress) -> bool:
        """Build the filesystem from a cached archive

        Any problem with the cached file is treated as a cache miss.

        Returns:
            True if the layer is ready
        """
        cached = self.cache.lookup(self.diff_id)
        if cached is None:
            return False

        self.state = LayerState.CACHE_HIT
        try:
            stream = cached.open("rb")
        except OSError as e:
            self.logger.warning(
                "layer {}: can't open cached file {}: {}", self.diff_id, cached, e
            )
            return False

        report(PROGRESS_CACHED)
        try:
            fs = TarFS(stream, name=str(cached))
        except (TarFSError, OSError) as e:
            stream.close()
            self.logger.warning(
                "layer {}: can't index cached file {}: {}", self.diff_id, cached, e
            )
            return False

        self.fs = fs
        self.state = LayerState.READY
        report(PROGRESS_DONE)
        self.logger.debug("layer {}: loaded from cache {}", self.diff_id, cached)
        return True

    def _create_new_layer(self, report: _Progress):
        """Decompress the layer blob into a new cache file and index it

        A partially written file is removed on failure.

        Raises:
            LayerExtractError: an I/O, archive or cache failure, naming the
                failing stage
        """
        self.state = LayerState.EXTRACTING
        cleanup = Cleanup(self.logger)
        stage = "allocate a cache file"
        start = time.time()
        try:
            path = self.cache.scratch_file_path()
            stage = "create cache file"
            file = path.open("w+b")
            cleanup.add(lambda: path.unlink(missing_ok=True), f"remove {path}")
            cleanup.add(file.close, f"close {path}")
            report(PROGRESS_COPY_START)

            stage = "open layer content"
            with self.blob.open() as source:
                stage = "copy layer content"
                reader = ProgressReader(
                    source,
                    self.size,
                    report.band(PROGRESS_COPY_START, PROGRESS_COPY_END),
                    self.progress_interval,
                )
                shutil.copyfileobj(reader, file, self.buffer_size)
            report(PROGRESS_COPY_END)
            copied = time.time()

            stage = "seek cache file"
            file.seek(0)
            stage = "index layer archive"
            fs = TarFS(file, name=str(path))
        except Exception as e:
            self.state = LayerState.FAILED
            cleanup.cleanup()
            self.logger.error("layer {}: failed to {}: {}", self.diff_id, stage, e)
            if isinstance(e, (OSError, EOFError, TarFSError, CacheManagerError)):
                raise LayerExtractError(self.diff_id, stage, e) from e
            raise

        self.cache.insert(self.diff_id, path)
        self.fs = fs
        self.state = LayerState.READY
        report(PROGRESS_DONE)
        self.logger.info(
            "layer {}: extracted {} in {:.3f}, indexed {} entries in {:.3f}",
            self.diff_id,
            humanize.naturalsize(reader.current, binary=True),
            copied - start,
            len(fs),
            time.time() - copied,
        )

    def _require_fs(self) -> TarFS:
        if self.fs is None:
            raise LayerNotInitialized(self.diff_id)
        return self.fs

    def open(self, path: str) -> Handle:
        """Open a file or directory of the layer

        Args:
            path: relative path within the layer

        Raises:
            LayerNotInitialized: initialize() hasn't succeeded
            PathNotFound: the path isn't in the layer
            LinkTargetMissing: the path is a hard link to a missing member

        Returns:
            a FileHandle or DirectoryHandle
        """
        return self._require_fs().open(path)

    def list_directory(self, path: str) -> list[File]:
        """Describe the direct children of a directory, in archive order

        Args:
            path: relative path within the layer

        Raises:
            NotADirectory: the path isn't a directory

        Returns:
            a File for each child
        """
        with self.open(path) as handle:
            if not isinstance(handle, DirectoryHandle):
                raise NotADirectory(path)
            children = handle.read_children(-1)

        return [
            File(
                name=child.name,
                is_dir=child.is_dir,
                path=clean_path(posixpath.join(path, child.name)),
                size=child.size,
                mode=child.mode_string,
                mod_time=child.mod_time_string,
            )
            for child in children
        ]

    def read_file(self, path: str) -> bytes:
        """Return the full content of a file

        Args:
            path: relative path within the layer

        Raises:
            IsADirectory: the path is a directory

        Returns:
            the file content
        """
        with self.open(path) as handle:
            if isinstance(handle, DirectoryHandle):
                raise IsADirectory(path)
            return handle.read()

    def close(self):
        """Release the layer filesystem; the cached archive stays reusable"""
        if self.fs is not None:
            self.fs.close()
            self.fs = None
            self.state = LayerState.UNINITIALIZED

    def __repr__(self) -> str:
        return f"<Layer {self.diff_id} {self.state.name}>"
