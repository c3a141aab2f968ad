"""
Utility functions common to the layer core and the command line.
"""
from collections import deque
from functools import partial
import hashlib
from logging import Logger
from typing import Callable, Deque, IO, NamedTuple

# Read granularity when hashing a stream
HASH_BUFFER_SIZE = 2**20


class DigestResult(NamedTuple):
    length: int
    digest: str


def digest_stream(stream: IO[bytes], algorithm: str = "sha256") -> DigestResult:
    """
    Return the check-sum of a byte stream without reading the entire stream
    into memory.

    The digest is formatted as "<algorithm>:<hex digest>", the way container
    image content identifiers are written.

    Args:
        stream      Readable byte stream, consumed to its end
        algorithm   A hashlib algorithm name

    Returns:
        DigestResult tuple containing the length and the digest of the stream.
    """
    d = hashlib.new(algorithm)
    length = 0
    for buf in iter(partial(stream.read, HASH_BUFFER_SIZE), b""):
        length += len(buf)
        d.update(buf)
    return DigestResult(length=length, digest=f"{algorithm}:{d.hexdigest()}")


class CleanupNotCallable(Exception):
    """
    Signal that caller tried to register a cleanup action with an object that
    was not a Callable on an object.
    """

    def __init__(self, action):
        self.action = action

    def __str__(self) -> str:
        return f"Parameter {self.action!r} ({type(self.action)} is not a Callable"


# Following are a set of classes to perform hierarchical cleanup actions when
# an error occurs.
#
# A Deque supports an ordered list of cleanup actions that will be popped and
# executed in reverse order on demand.
#
# Cleanup actions are Callable objects; to queue an action requiring parameters
# a `lambda` expression can be used.


class CleanupAction:
    """
    Define a single cleanup action necessary to reverse persistent steps in an
    operation.
    """

    def __init__(self, logger: Logger, action: Callable, name: str = None):
        """
        Define a cleanup action

        Args:
            logger: The active Logger object
            action: a Callable to perform cleanup
            name: optional printable name for debugging
        """
        self.action = action
        self.logger = logger
        self.name = name if name else repr(action)

    def cleanup(self):
        """
        Perform a cleanup action, executing a callable associated with some
        object (usually an open file or a Path) that needs cleaning.

        This handles errors and reports them, but doesn't propagate failure to
        ensure that cleanup continues as best we can.
        """
        try:
            self.action()
        except Exception as e:
            self.logger.error("Unable to {}: {}", self, e)

    def __str__(self) -> str:
        return self.name


class Cleanup:
    """
    Maintain and process a deque of cleanup actions accumulated during a
    sequence of steps that need to be reversed or otherwise cleaned up when
    an error condition occurs: for example, closing a partially written cache
    file and removing it.

    Cleanup actions are maintained in an ordered list and will be processed
    in reverse of the order they were registered.

    For example,

        cleanup = Cleanup(logger)
        try:
            [...]
            file = path.open("w+b")
            cleanup.add(lambda: path.unlink(missing_ok=True), "remove file")
            cleanup.add(file.close, "close file")
            [...]
        except Exception:
            cleanup.cleanup()
    """

    def __init__(self, logger: Logger):
        """
        Define a deque on which cleanup actions will be recorded, and attach
        a Logger object to report errors.

        Args:
            logger: brace-style Logger
        """
        self.logger = logger
        self.actions: Deque[CleanupAction] = deque()

    def add(self, action: Callable, name: str = None) -> None:
        """
        Add a new cleanup action to the front of the deque.

        This registers a Callable that requires no parameters; for example
        `file.close`, or `lambda: path.unlink(missing_ok=True)`

        Args:
            Callable to be executed to clean up a step
        """
        if not callable(action):
            raise CleanupNotCallable(action)
        self.actions.appendleft(CleanupAction(self.logger, action, name))

    def cleanup(self):
        """
        Perform queued cleanup actions in order from most recent to oldest.
        """
        for action in self.actions:
            action.cleanup()
        self.actions.clear()
