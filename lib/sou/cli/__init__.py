import datetime
from typing import Union

import click

from sou import SouConfig


class CliContext:
    """Sou CLI Click context object

    Create a click context object that holds the state of the command
    invocation. The CliContext keeps track of the passed parameters, in
    particular the `--config` value shared by every command.
    """

    pass


pass_cli_context = click.make_pass_decorator(CliContext, ensure=True)


class Verify:
    """Encapsulate -v status messages."""

    def __init__(self, verify: Union[bool, int]):
        """Initialize the object.

        Args:
            verify: True (or a level) to write status messages.
        """
        if isinstance(verify, int):
            self.verify = verify
        else:
            self.verify = 1 if verify else 0

    def __bool__(self) -> bool:
        return bool(self.verify)

    def status(self, message: str, level: int = 1):
        """Write a message if verification is enabled.

        Args:
            message: status string
            level: minimum verification level for the message
        """
        if self.verify >= level:
            ts = datetime.datetime.now().astimezone()
            click.secho(f"({ts:%H:%M:%S}) {message}", fg="green", err=True)


def config_setup(context: object) -> SouConfig:
    return SouConfig(getattr(context, "config", None))
