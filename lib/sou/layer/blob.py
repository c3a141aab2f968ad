import bz2
import gzip
import lzma
from pathlib import Path
from typing import Callable, IO, Optional

from sou.common.utils import digest_stream
from sou.layer import PathLike

# Leading bytes identifying the compressions a layer file may use
_MAGIC = (
    (b"\x1f\x8b", gzip.open),
    (b"\xfd7zXZ\x00", lzma.open),
    (b"BZh", bz2.open),
)


class Blob:
    """The content of one image layer, as supplied by an image source.

    Args:
        diff_id: stable identifier of the decompressed content
        size: declared decompressed size in bytes; only used to compute
            progress, so an inexact value is harmless
        opener: returns a fresh stream of decompressed bytes on each call
    """

    def __init__(self, diff_id: str, size: int, opener: Callable[[], IO[bytes]]):
        self.diff_id = diff_id
        self.size = size
        self.opener = opener

    def open(self) -> IO[bytes]:
        return self.opener()

    def __repr__(self) -> str:
        return f"<Blob {self.diff_id} ({self.size} bytes)>"


def open_layer_file(path: PathLike) -> IO[bytes]:
    """Open a layer tar file, decompressing it if necessary

    Args:
        path: a plain, gzip, xz or bzip2 compressed tar file

    Returns:
        a stream of decompressed bytes
    """
    with open(path, "rb") as f:
        head = f.read(6)
    for magic, opener in _MAGIC:
        if head.startswith(magic):
            return opener(path, "rb")
    return open(path, "rb")


class LocalBlob(Blob):
    """A layer blob stored in a local file."""

    def __init__(self, path: PathLike, diff_id: str, size: int):
        self.path = Path(path)
        super().__init__(diff_id, size, lambda: open_layer_file(self.path))

    @classmethod
    def from_path(cls, path: PathLike, diff_id: Optional[str] = None) -> "LocalBlob":
        """Describe a local layer file

        Without a diff ID, the decompressed content is read once to compute
        its size and its "sha256:" digest, which becomes the diff ID. A
        compressed layer is then decompressed twice: here, and again when
        it is extracted into the cache. A known diff ID skips this pass;
        the size is then the size of the file on disk, which only serves
        progress reporting.

        Args:
            path: a plain or compressed tar file
            diff_id: the layer diff ID, if already known

        Returns:
            LocalBlob for the file
        """
        if diff_id is not None:
            return cls(path, diff_id, Path(path).stat().st_size)
        with open_layer_file(path) as stream:
            result = digest_stream(stream)
        return cls(path, result.digest, result.length)
