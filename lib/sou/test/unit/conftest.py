import bz2
import gzip
import io
import lzma
from pathlib import Path
import tarfile
from typing import Optional

import pytest

from sou import SouConfig
from sou.common.logger import get_sou_logger
from sou.layer.cache_manager import LayerCache
from sou.test import on_disk_config

sou_cfg_tmpl = """[logging]
logger_type = null
# We run with DEBUG level logging during the unit tests to help verify we
# are not emitting too many logs.
logging_level = DEBUG

[sou]
cache-dir = {TMP}/cache

###########################################################################
# The rest will come from the default config file.
[config]
path = {TMP}/config
files = sou-default.cfg
"""

sou_default_cfg = """[sou]
cache-prefix = sou-cache-
progress-interval = 0.05
copy-buffer-size = 64 KiB
"""

# Modification time given to every generated archive member:
# 2023-11-14 22:13:20 UTC
MTIME = 1700000000


def do_setup(tmp_d: Path) -> Path:
    """Perform on disk sou config setup."""
    (tmp_d / "cache").mkdir(parents=True, exist_ok=True)
    cfg_dir = tmp_d / "config"
    cfg_dir.mkdir(parents=True, exist_ok=True)
    (cfg_dir / "sou-default.cfg").write_text(sou_default_cfg)
    (cfg_dir / "sou.cfg").write_text(sou_cfg_tmpl.format(TMP=str(tmp_d)))
    return cfg_dir


@pytest.fixture(scope="session")
def on_disk_sou_config(tmp_path_factory) -> dict[str, Path]:
    """Test package setup for sou"""
    return on_disk_config(tmp_path_factory, "sou", do_setup)


@pytest.fixture(scope="session")
def sou_cfg_file(on_disk_sou_config) -> Path:
    return on_disk_sou_config["cfg_dir"] / "sou.cfg"


@pytest.fixture(scope="session")
def sou_config(sou_cfg_file) -> SouConfig:
    """Mock a sou.cfg configuration as defined above.

    Args:
        sou_cfg_file: the on-disk sou configuration file

    Returns:
        a SouConfig object the test case can use
    """
    return SouConfig(str(sou_cfg_file))


@pytest.fixture(scope="session")
def make_logger(sou_config):
    """
    Construct a sou Logger object
    """
    return get_sou_logger("TEST", sou_config)


@pytest.fixture()
def layer_cache(sou_config, make_logger):
    """A LayerCache whose scratch directory is removed after the test"""
    cache = LayerCache(sou_config, make_logger)
    yield cache
    cache.cleanup()


class TarBuilder:
    """Build a tar archive in memory, one member at a time."""

    def __init__(self):
        self.buffer = io.BytesIO()
        self.tar = tarfile.open(fileobj=self.buffer, mode="w")

    def _add(self, info: tarfile.TarInfo, data: Optional[bytes] = None):
        info.mtime = MTIME
        info.uname = info.gname = "root"
        self.tar.addfile(info, io.BytesIO(data) if data is not None else None)
        return self

    def directory(self, name: str, mode: int = 0o755) -> "TarBuilder":
        info = tarfile.TarInfo(name)
        info.type = tarfile.DIRTYPE
        info.mode = mode
        return self._add(info)

    def file(self, name: str, data: bytes, mode: int = 0o644) -> "TarBuilder":
        info = tarfile.TarInfo(name)
        info.size = len(data)
        info.mode = mode
        return self._add(info, data)

    def hardlink(self, name: str, target: str) -> "TarBuilder":
        info = tarfile.TarInfo(name)
        info.type = tarfile.LNKTYPE
        info.linkname = target
        info.mode = 0o644
        return self._add(info)

    def symlink(self, name: str, target: str) -> "TarBuilder":
        info = tarfile.TarInfo(name)
        info.type = tarfile.SYMTYPE
        info.linkname = target
        info.mode = 0o777
        return self._add(info)

    def fifo(self, name: str) -> "TarBuilder":
        info = tarfile.TarInfo(name)
        info.type = tarfile.FIFOTYPE
        info.mode = 0o600
        return self._add(info)

    def getvalue(self) -> bytes:
        self.tar.close()
        return self.buffer.getvalue()


def write_layer(path: Path, data: bytes, compression: Optional[str] = None) -> Path:
    """Write archive bytes to a layer file, optionally compressed

    Args:
        path: the file to write
        data: tar archive bytes
        compression: None, "gz", "xz" or "bz2"

    Returns:
        the path
    """
    if compression == "gz":
        data = gzip.compress(data)
    elif compression == "xz":
        data = lzma.compress(data)
    elif compression == "bz2":
        data = bz2.compress(data)
    path.write_bytes(data)
    return path


@pytest.fixture()
def tar_builder():
    """Return the TarBuilder class so tests can build their own archives"""
    return TarBuilder


@pytest.fixture()
def sample_tar() -> bytes:
    """A small layer with two levels of directories"""
    return (
        TarBuilder()
        .directory("dir1/")
        .directory("dir1/dir2/")
        .file("file1.txt", b"Hello, World!")
        .file("dir1/file2.txt", b"Hello from dir1!")
        .file("dir1/dir2/file3.txt", b"Hello from dir2!")
        .getvalue()
    )


@pytest.fixture()
def make_layer_file(tmp_path):
    """Return a function writing a layer file under the test's tmp_path"""

    def make(data: bytes, name: str = "layer.tar", compression: Optional[str] = None):
        return write_layer(tmp_path / name, data, compression)

    return make
