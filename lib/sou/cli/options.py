from typing import Callable

import click

from sou.cli import CliContext


def common_options(in_f: Callable) -> Callable:
    """
    This function can be used as a decorator for the sou CLI utilities,
    where it receives a click command decorated function as an argument and
    sets the common configuration options on the CLI, in this case the sou
    configuration file.
    :param in_f: click command decorated function
    :return: function with common click options set
    """
    out_f = _sou_config(in_f)
    return out_f


def _sou_config(f: Callable) -> Callable:
    """Option for the configuration file"""

    def callback(ctx, param, value):
        clictx = ctx.ensure_object(CliContext)
        clictx.config = value
        return value

    return click.option(
        "-C",
        "--config",
        required=False,
        envvar="_SOU_CONFIG",
        type=click.Path(exists=True, readable=True, dir_okay=False),
        callback=callback,
        expose_value=False,
        help=(
            "Path to a sou configuration file (defaults to the '_SOU_CONFIG' "
            "environment variable, if defined; built-in defaults otherwise)"
        ),
    )(f)
