import signal
import sys
from typing import Any, Callable, Optional

import click
import humanize

from sou.cli import config_setup, pass_cli_context, Verify
from sou.cli.options import common_options
from sou.common.exceptions import BadConfig, ConfigFileError
from sou.common.logger import get_sou_logger
from sou.layer.blob import LocalBlob
from sou.layer.cache_manager import LayerCache
from sou.layer.layer import Layer, LayerExtractError
from sou.layer.tarfs import (
    IsADirectory,
    LinkTargetMissing,
    NotADirectory,
    PathNotFound,
)

verifier: Optional[Verify] = None


def print_listing(layer: Layer, path: str):
    """Print the direct children of a layer directory, "ls -l" style

    Args:
        layer: an initialized layer
        path: directory path within the layer
    """
    for file in layer.list_directory(path):
        name = f"{file.path}/" if file.is_dir else file.path
        click.echo(f"{file.mode} {file.size:>12d} {file.mod_time} {name}")


def print_tree(layer: Layer, path: str, depth: int = 0):
    """Print the hierarchy below a layer directory

    Args:
        layer: an initialized layer
        path: directory path within the layer
        depth: nesting level of path
    """
    for file in layer.list_directory(path):
        click.echo(f"{'  ' * depth}{file.name}{'/' if file.is_dir else ''}")
        if file.is_dir:
            print_tree(layer, file.path, depth + 1)


def progress_display(layer_file: str) -> tuple[Any, Callable[[float], None]]:
    """Build a progress callback drawing a bar on stderr

    Args:
        layer_file: the layer file name used as the bar label

    Returns:
        the bar, to be used as a context manager, and the progress callback
        that advances it
    """
    bar = click.progressbar(length=100, label=layer_file, file=sys.stderr)
    shown = 0

    def update(fraction: float):
        nonlocal shown
        target = int(fraction * 100)
        if target > shown:
            bar.update(target - shown)
            shown = target

    return bar, update


@click.command(name="sou-layer")
@pass_cli_context
@click.argument(
    "layer_files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False)
)
@click.option(
    "--list",
    "list_path",
    metavar="PATH",
    help="List the contents of a directory of each layer (the default, for '.')",
)
@click.option("--cat", "cat_path", metavar="PATH", help="Write the content of a file")
@click.option(
    "--tree", default=False, is_flag=True, help="Display the full hierarchy of each layer"
)
@click.option(
    "--diff-id",
    "diff_ids",
    multiple=True,
    metavar="DIGEST",
    help="The known diff ID of each layer file, in order, to skip computing it",
)
@click.option(
    "--progress",
    "-p",
    default=False,
    is_flag=True,
    help="Show a progress bar while loading layers",
)
@click.option(
    "--verify", "-v", default=False, is_flag=True, help="Display intermediate messages"
)
@common_options
def layer_command(
    context: object,
    layer_files: tuple[str, ...],
    list_path: Optional[str],
    cat_path: Optional[str],
    tree: bool,
    diff_ids: tuple[str, ...],
    progress: bool,
    verify: bool,
):
    """
    Load container image layer archives and browse their contents.

    Each LAYER_FILES argument is a layer tar file, optionally compressed with
    gzip, xz or bzip2. Layers are decompressed once into a scratch cache,
    which is removed when the command exits.
    \f

    Args:
        context: Click context (contains shared `--config` value)
        layer_files: layer archive files
        list_path: directory to list
        cat_path: file to write to stdout
        tree: print the full hierarchy
        diff_ids: known diff IDs of the layer files
        progress: display a progress bar while loading
        verify: display intermediate messages
    """
    global verifier
    verifier = Verify(verify)
    if diff_ids and len(diff_ids) != len(layer_files):
        raise click.UsageError(
            f"{len(diff_ids)} diff IDs given for {len(layer_files)} layer files"
        )
    logger = None
    cache = None
    layers: list[Layer] = []

    try:
        config = config_setup(context)
        logger = get_sou_logger("sou-layer", config)
        cache = LayerCache(config, logger)
        known_ids = diff_ids if diff_ids else (None,) * len(layer_files)
        for layer_file, diff_id in zip(layer_files, known_ids):
            verifier.status(f"loading {layer_file}")
            blob = LocalBlob.from_path(layer_file, diff_id)
            layer = Layer.create(blob, cache, config, logger)
            layers.append(layer)
            if progress:
                bar, update = progress_display(layer_file)
                with bar:
                    layer.initialize(update)
            else:
                layer.initialize()
            verifier.status(
                f"loaded {layer.diff_id} ({humanize.naturalsize(layer.size, binary=True)})"
            )

        for layer_file, layer in zip(layer_files, layers):
            if len(layers) > 1:
                click.echo(f"==> {layer_file} <==")
            if cat_path:
                click.echo(layer.read_file(cat_path), nl=False)
            elif tree:
                print_tree(layer, ".")
            else:
                print_listing(layer, list_path if list_path else ".")
        rv = 0
    except (PathNotFound, LinkTargetMissing) as exc:
        click.echo(f"Not found: {exc}", err=True)
        rv = 1
    except (NotADirectory, IsADirectory) as exc:
        click.echo(exc, err=True)
        rv = 1
    except LayerExtractError as exc:
        click.echo(f"Unable to load layer: {exc}", err=True)
        rv = 1
    except (BadConfig, ConfigFileError) as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        rv = 2
    except KeyboardInterrupt:
        click.echo("Interrupted", err=True)
        rv = 130
    except Exception as exc:
        if logger:
            logger.exception("An error occurred browsing layers: {}", exc)
        click.echo(exc, err=True)
        rv = 1
    finally:
        for layer in layers:
            layer.close()
        if cache is not None:
            verifier.status("removing the layer cache")
            for error in cache.cleanup():
                click.secho(f"Cleanup failed: {error}", fg="red", err=True)

    click.get_current_context().exit(rv)


def _terminate(signum, frame):
    """Unwind on SIGTERM so that the layer cache is removed on the way out"""
    raise SystemExit(128 + signum)


def main():
    signal.signal(signal.SIGTERM, _terminate)
    layer_command()
