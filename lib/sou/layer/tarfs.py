from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import auto, Enum
import io
import posixpath
import stat
import tarfile
import threading
from typing import IO, Optional, Union

# The path of the synthetic root directory of every layer filesystem
ROOT = "."

# Format of the modification time reported for directory listings
MTIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class TarFSError(Exception):
    """Base class for exceptions raised from this module."""

    pass


class PathNotFound(TarFSError):
    """The path isn't present in the layer index."""

    def __init__(self, path: str):
        super().__init__(f"The path {path!r} does not exist in the layer")
        self.path = path


class LinkTargetMissing(TarFSError):
    """A hard link refers to a member that isn't present in the layer."""

    def __init__(self, path: str, target: str):
        super().__init__(f"The hard link {path!r} refers to missing target {target!r}")
        self.path = path
        self.target = target


class NotADirectory(TarFSError):
    """A directory operation was attempted on something else."""

    def __init__(self, path: str):
        super().__init__(f"The path {path!r} is not a directory")
        self.path = path


class IsADirectory(TarFSError):
    """A content read was attempted on a directory."""

    def __init__(self, path: str):
        super().__init__(f"The path {path!r} is a directory")
        self.path = path


class EndOfListing(TarFSError):
    """A paginated listing was requested after the last child was returned."""

    def __init__(self, path: str):
        super().__init__(f"No more entries in directory {path!r}")
        self.path = path


class ArchiveFormatError(TarFSError):
    """The layer archive is malformed or truncated."""

    def __init__(self, name: str, error: Exception):
        super().__init__(f"Unable to index layer archive {name}: {str(error)!r}")
        self.name = name
        self.error = str(error)


class EntryType(Enum):
    """The type of an archive member"""

    DIRECTORY = auto()  # A directory
    FILE = auto()  # A regular file
    HARDLINK = auto()  # A hard link to another member
    SYMLINK = auto()  # A symbolic link
    OTHER = auto()  # Devices, FIFOs, sparse files, etc.


def clean_path(name: str) -> str:
    """Normalize an archive member name or a lookup path.

    Leading separators and "./" prefixes are removed and "." and ".."
    segments are collapsed; ".." never climbs above the root.

    Args:
        name: a member name or a user supplied path

    Returns:
        a relative path, or "." for the root
    """
    return posixpath.normpath("/" + name).lstrip("/") or ROOT


@dataclass
class Entry:
    """Index record for one archive member.

    Args:
        path: normalized path within the layer
        type: member type
        size: content size in bytes
        offset: position of the member content within the archive stream
        mode: permission bits
        mtime: modification time, seconds since the Epoch
        linkname: target of a link; hard link targets are normalized
        ifmt: the stat file type bits matching the tar member type
        children: direct children, in archive order (directories only)
    """

    path: str
    type: EntryType
    size: int = 0
    offset: int = 0
    mode: int = 0
    mtime: float = 0.0
    linkname: str = ""
    ifmt: int = stat.S_IFREG
    children: list["Entry"] = field(default_factory=list, repr=False)

    @classmethod
    def root(cls) -> "Entry":
        """The synthetic root directory present in every index"""
        return cls(path=ROOT, type=EntryType.DIRECTORY, mode=0o777, ifmt=stat.S_IFDIR)

    @classmethod
    def create(cls, info: tarfile.TarInfo) -> "Entry":
        """Collect the member info

        Args:
            info: the tar header of a member

        Returns:
            Entry with the member metadata
        """
        linkname = info.linkname
        if info.isdir():
            etype, ifmt = EntryType.DIRECTORY, stat.S_IFDIR
        elif info.issym():
            etype, ifmt = EntryType.SYMLINK, stat.S_IFLNK
        elif info.islnk():
            # Hard links are presented as regular files once resolved
            etype, ifmt = EntryType.HARDLINK, stat.S_IFREG
            linkname = clean_path(linkname)
        elif info.issparse():
            etype, ifmt = EntryType.OTHER, stat.S_IFREG
        elif info.isreg():
            etype, ifmt = EntryType.FILE, stat.S_IFREG
        elif info.ischr():
            etype, ifmt = EntryType.OTHER, stat.S_IFCHR
        elif info.isblk():
            etype, ifmt = EntryType.OTHER, stat.S_IFBLK
        elif info.isfifo():
            etype, ifmt = EntryType.OTHER, stat.S_IFIFO
        else:
            etype, ifmt = EntryType.OTHER, 0

        return cls(
            path=clean_path(info.name),
            type=etype,
            size=info.size,
            offset=info.offset_data,
            mode=info.mode & 0o7777,
            mtime=info.mtime,
            linkname=linkname,
            ifmt=ifmt,
        )

    @property
    def name(self) -> str:
        return ROOT if self.path == ROOT else posixpath.basename(self.path)

    @property
    def is_dir(self) -> bool:
        return self.type is EntryType.DIRECTORY

    @property
    def st_mode(self) -> int:
        return self.ifmt | self.mode

    @property
    def mode_string(self) -> str:
        """The mode in "ls -l" form, e.g. "drwxr-xr-x" """
        return stat.filemode(self.st_mode)

    @property
    def mod_time(self) -> datetime:
        return datetime.fromtimestamp(self.mtime, timezone.utc)

    @property
    def mod_time_string(self) -> str:
        return self.mod_time.strftime(MTIME_FORMAT)

    def refresh(self, other: "Entry"):
        """Take over the header metadata of a later duplicate directory
        member, keeping the children already linked here.
        """
        self.size = other.size
        self.offset = other.offset
        self.mode = other.mode
        self.mtime = other.mtime


def build_index(stream: IO[bytes], name: str) -> dict[str, Entry]:
    """Scan a tar stream once and index its members.

    Only header metadata is kept: the member content is skipped, so memory
    use depends on the number of members, not on the archive size.

    Args:
        stream: a seekable byte stream positioned at the start of the archive
        name: the archive name used in error messages

    Raises:
        ArchiveFormatError: the archive is malformed or truncated
        OSError: the stream can't be read

    Returns:
        A map from normalized member path to Entry, including the root
    """
    entries: dict[str, Entry] = {ROOT: Entry.root()}
    try:
        with tarfile.open(fileobj=stream, mode="r:") as tar:
            for info in tar:
                _link(entries, Entry.create(info))

            # tarfile ends the iteration quietly at a bad header past the
            # first member; anything but an end-of-archive block is an error.
            stream.seek(tar.offset)
            if stream.read(tarfile.BLOCKSIZE).strip(b"\0"):
                raise tarfile.HeaderError(f"invalid header at offset {tar.offset}")
    except tarfile.TarError as e:
        raise ArchiveFormatError(name, e) from e
    return entries


def _link(entries: dict[str, Entry], entry: Entry):
    """Add an entry to the index and to its parent's children"""
    existing = entries.get(entry.path)
    if existing is not None:
        if existing.is_dir and entry.is_dir:
            existing.refresh(entry)
            return
        if entry.path == ROOT:
            # The root is always a directory
            return
    entries[entry.path] = entry

    parent = entries.get(posixpath.dirname(entry.path) or ROOT)
    if parent is None or not parent.is_dir:
        return
    if existing is not None:
        for i, child in enumerate(parent.children):
            if child is existing:
                parent.children[i] = entry
                return
    parent.children.append(entry)


class StreamReader:
    """Random access to a stream that is shared by many readers.

    Each read is a single transaction against the stream cursor: save the
    position, seek, read, and restore the position, all under one lock.
    """

    def __init__(self, stream: IO[bytes]):
        self.stream = stream
        self.lock = threading.Lock()

    def read_at(self, offset: int, size: int) -> bytes:
        """Read up to size bytes starting at an absolute stream offset"""
        with self.lock:
            position = self.stream.tell()
            try:
                self.stream.seek(offset)
                return self.stream.read(size)
            finally:
                self.stream.seek(position)


class FileHandle(io.RawIOBase):
    """A read-only view of one member's content.

    Reads are bounded to the member's [offset, offset + size) window of the
    layer stream, and seek positions are relative to the window. Closing the
    handle never closes the shared stream.
    """

    def __init__(self, entry: Entry, reader: StreamReader):
        super().__init__()
        self.entry = entry
        self.reader = reader
        self.position = 0

    @property
    def name(self) -> str:
        return self.entry.path

    def stat(self) -> Entry:
        return self.entry

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        remaining = self.entry.size - self.position
        if remaining <= 0 or not len(b):
            return 0
        data = self.reader.read_at(
            self.entry.offset + self.position, min(len(b), remaining)
        )
        n = len(data)
        b[:n] = data
        self.position += n
        return n

    def readall(self) -> bytes:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        remaining = self.entry.size - self.position
        if remaining <= 0:
            return b""
        data = self.reader.read_at(self.entry.offset + self.position, remaining)
        self.position += len(data)
        return data

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = self.position + offset
        elif whence == io.SEEK_END:
            position = self.entry.size + offset
        else:
            raise ValueError(f"invalid whence ({whence!r})")
        if position < 0:
            raise ValueError(f"negative seek position {position}")
        self.position = position
        return self.position

    def tell(self) -> int:
        return self.position

    def read_children(self, n: int = -1) -> list[Entry]:
        raise NotADirectory(self.entry.path)


class DirectoryHandle:
    """A paginated listing of one directory's children.

    The handle keeps its own cursor, so independent handles on the same
    directory each enumerate every child.
    """

    def __init__(self, entry: Entry):
        self.entry = entry
        self.position = 0
        self.closed = False

    @property
    def name(self) -> str:
        return self.entry.path

    def stat(self) -> Entry:
        return self.entry

    def read_children(self, n: int = -1) -> list[Entry]:
        """Return the next children of the directory

        Args:
            n: the maximum number of children, or <= 0 for all remaining

        Raises:
            EndOfListing: n > 0 and every child has already been returned

        Returns:
            children in archive order
        """
        if self.closed:
            raise ValueError("I/O operation on closed directory")
        children = self.entry.children
        if n <= 0:
            end = len(children)
        else:
            if self.position >= len(children):
                raise EndOfListing(self.entry.path)
            end = min(self.position + n, len(children))
        result = children[self.position : end]
        self.position = end
        return result

    def close(self):
        self.closed = True

    def __enter__(self) -> "DirectoryHandle":
        return self

    def __exit__(self, *exc):
        self.close()


Handle = Union[FileHandle, DirectoryHandle]


class TarFS:
    """A read-only filesystem over one tar archive stream.

    The index is built once by scanning the stream from start to end, and is
    never modified afterwards; file content is read on demand from the stream.
    The TarFS owns the stream: handles returned by `open` share it.
    """

    def __init__(self, stream: IO[bytes], name: Optional[str] = None):
        """Index a tar stream

        Args:
            stream: a seekable byte stream positioned at the archive start
            name: a name for diagnostics, defaulting to the stream's name

        Raises:
            ArchiveFormatError: the archive is malformed or truncated
            OSError: the stream can't be read
        """
        self.name = name if name else str(getattr(stream, "name", "<stream>"))
        self.entries: dict[str, Entry] = build_index(stream, self.name)
        self.stream = stream
        self.reader = StreamReader(stream)

    def __contains__(self, path: str) -> bool:
        return clean_path(path) in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def find_entry(self, path: str) -> Entry:
        """Locate the index entry for a path, following hard links

        Args:
            path: relative path within the layer

        Raises:
            PathNotFound: the path isn't in the layer
            LinkTargetMissing: the path is a hard link to a missing member

        Returns:
            the Entry
        """
        entry = self.entries.get(clean_path(path))
        if entry is None:
            raise PathNotFound(path)
        if entry.type is EntryType.HARDLINK:
            target = self.entries.get(entry.linkname)
            if target is None:
                raise LinkTargetMissing(path, entry.linkname)
            entry = target
        return entry

    def open(self, path: str) -> Handle:
        """Open a file or directory

        Args:
            path: relative path within the layer

        Raises:
            PathNotFound: the path isn't in the layer
            LinkTargetMissing: the path is a hard link to a missing member

        Returns:
            a DirectoryHandle for a directory, or a FileHandle otherwise
        """
        entry = self.find_entry(path)
        if entry.is_dir:
            return DirectoryHandle(entry)
        return FileHandle(entry, self.reader)

    def close(self):
        """Close the underlying stream; open handles become unusable"""
        self.stream.close()

    def __enter__(self) -> "TarFS":
        return self

    def __exit__(self, *exc):
        self.close()
