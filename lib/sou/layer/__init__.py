"""Layer materialization: tar-backed layer filesystems and their cache.
"""

from pathlib import Path
from typing import Callable, Union

# A type for arguments that may be a string path or a Path object.
PathLike = Union[str, Path]

# A progress callback receives fractions in [0, 1].
ProgressFunc = Callable[[float], None]
