"""
Simple module level convenience functions.
"""

from configparser import ConfigParser, NoOptionError, NoSectionError
from pathlib import Path
import tempfile
from typing import Optional

import humanfriendly

from sou.common import configtools
from sou.common.exceptions import BadConfig, ConfigFileError


class SouConfig:
    """A simple class to wrap a ConfigParser object using the configtools
    style of multiple configuration files.

    A configuration file is optional: without one, every option takes its
    default value.
    """

    # Default scratch directory name prefix; a unique suffix is appended
    # for each cache instance.
    DEFAULT_CACHE_PREFIX = "sou-cache-"

    # Minimum wall-clock time between two progress callbacks while copying
    # layer content.
    DEFAULT_PROGRESS_INTERVAL = 0.05

    DEFAULT_COPY_BUFFER_SIZE = "1 MiB"

    def __init__(self, cfg_name: Optional[str] = None):
        self.conf = ConfigParser()
        if cfg_name:
            if not Path(cfg_name).is_file():
                raise ConfigFileError(f"Configuration file {cfg_name!r} not found")
            # Enumerate the list of files
            config_files = configtools.file_list(str(cfg_name))
            config_files.reverse()
            self.files = self.conf.read(config_files)
        else:
            self.files = []

        try:
            self.logger_type = self.conf.get("logging", "logger_type")
        except (NoOptionError, NoSectionError):
            self.logger_type = "file"
        else:
            if self.logger_type == "hostport":
                try:
                    self.logger_host = self.conf.get("logging", "logger_host")
                    self.logger_port = self.conf.get("logging", "logger_port")
                except NoOptionError as exc:
                    raise BadConfig(str(exc))

        try:
            self.log_dir = self.conf.get("logging", "log_dir")
        except (NoOptionError, NoSectionError):
            self.log_dir = str(Path.home() / ".cache" / "sou")

        try:
            self.default_logging_level = self.conf.get("logging", "logging_level")
        except (NoOptionError, NoSectionError):
            self.default_logging_level = "INFO"

        try:
            # We don't document the "log_format" parameter since it is really
            # only present to facilitate easier unit testing.
            self.log_fmt = self.conf.get("logging", "log_format")
        except (NoOptionError, NoSectionError):
            self.log_fmt = None

        # Force UTC everywhere
        self.TZ = "UTC"

    def get(self, *args, **kwargs):
        return self.conf.get(*args, **kwargs)

    @property
    def cache_dir(self) -> Path:
        """The directory under which the scratch directory is created."""
        value = self.get("sou", "cache-dir", fallback="")
        if not value:
            return Path(tempfile.gettempdir())
        path = Path(value).expanduser()
        if not path.is_dir():
            raise BadConfig(f"Bad cache-dir={value}")
        return path

    @property
    def cache_prefix(self) -> str:
        prefix = self.get("sou", "cache-prefix", fallback=self.DEFAULT_CACHE_PREFIX)
        if not prefix or "/" in prefix:
            raise BadConfig(f"Bad cache-prefix={prefix!r}")
        return prefix

    @property
    def progress_interval(self) -> float:
        try:
            interval = self.conf.getfloat(
                "sou", "progress-interval", fallback=self.DEFAULT_PROGRESS_INTERVAL
            )
        except ValueError as exc:
            raise BadConfig(str(exc))
        if interval < 0:
            raise BadConfig(f"Bad progress-interval={interval}")
        return interval

    @property
    def copy_buffer_size(self) -> int:
        value = self.get(
            "sou", "copy-buffer-size", fallback=self.DEFAULT_COPY_BUFFER_SIZE
        )
        try:
            size = humanfriendly.parse_size(value, binary=True)
        except humanfriendly.InvalidSize as exc:
            raise BadConfig(str(exc))
        if size <= 0:
            raise BadConfig(f"Bad copy-buffer-size={value!r}")
        return size
