"""
ocipkg CLI

Packages binaries as OCI images and moves them between the filesystem, the
local package store and container registries:
- pack: Package files or a directory into an oci-archive
- inspect: Show the image names and files of an oci-archive
- load: Import an oci-archive into the local store
- get: Fetch an image from its registry into the local store
- push: Push an oci-archive to a registry
- list: List images in the local store
- image-directory: Print the local directory of a stored image
- tags: List tags of a remote repository
- login: Save registry credentials
- link-flags: Print linker flags for a stored package
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer

from .cli_context import CLIContext
from .operations import Operations, OpsConfig, run_and_exit
from .operations.printers import (
    print_images,
    print_inspect,
    print_lines,
    print_pack_summary,
    print_push_summary,
)

app = typer.Typer(name="ocipkg", help="Package binaries as OCI images", no_args_is_help=True)


@app.callback()
def main_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Package binaries as OCI images."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(action, verbose: bool = False):
    """Run `action(ops)` with a fresh context, mapping errors to exit codes."""
    def _call():
        context = CLIContext.from_env()
        try:
            ops = Operations(OpsConfig(verbose=verbose), settings=context.settings,
                             session=context.session, store=context.store)
            return action(ops)
        finally:
            context.close()

    return run_and_exit(_call)


@app.command()
def pack(
    inputs: List[Path] = typer.Argument(..., help="Files to package, or a single directory"),
    output: Path = typer.Option(..., "--output", "-o", help="Output oci-archive path"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Image name to bind the manifest to"),
) -> None:
    """Package files into an oci-archive."""
    layout, out_path = _run(lambda ops: ops.pack(inputs, output, name))
    print_pack_summary(layout, out_path)


@app.command()
def inspect(
    archive: Path = typer.Argument(..., help="oci-archive to inspect"),
) -> None:
    """Show the image names and files of an oci-archive."""
    print_inspect(_run(lambda ops: ops.inspect(archive)))


@app.command()
def load(
    archive: Path = typer.Argument(..., help="oci-archive to import"),
) -> None:
    """Import an oci-archive into the local store."""
    path = _run(lambda ops: ops.load(archive))
    typer.echo(str(path))


@app.command()
def get(
    image: str = typer.Argument(..., help="Image name, e.g. ghcr.io/org/pkg:1.0"),
    refresh: bool = typer.Option(False, "--refresh", help="Re-resolve the tag against the registry"),
) -> None:
    """Fetch an image into the local store."""
    path = _run(lambda ops: ops.get(image, refresh=refresh))
    typer.echo(str(path))


@app.command()
def push(
    archive: Path = typer.Argument(..., help="oci-archive to push"),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="Push under this image name"),
) -> None:
    """Push an oci-archive to a registry."""
    results = _run(lambda ops: ops.push(archive, target))
    print_push_summary(results)


@app.command("list")
def list_images(
    long: bool = typer.Option(False, "--long", "-l", help="Show local directories"),
) -> None:
    """List images in the local store."""
    images = _run(lambda ops: ops.list(), verbose=long)
    print_images(images, verbose=long)


@app.command("image-directory")
def image_directory(
    image: str = typer.Argument(..., help="Image name"),
) -> None:
    """Print the local directory of a stored image."""
    path = _run(lambda ops: ops.image_directory(image))
    typer.echo(str(path))


@app.command()
def tags(
    image: str = typer.Argument(..., help="Repository, e.g. ghcr.io/org/pkg"),
) -> None:
    """List tags of a remote repository."""
    print_lines(_run(lambda ops: ops.tags(image)))


@app.command()
def login(
    registry: str = typer.Argument(..., help="Registry host, e.g. ghcr.io"),
    username: str = typer.Option(..., "--username", "-u", help="Registry username"),
    password: str = typer.Option(..., "--password", "-p", help="Registry password or token",
                                 prompt=True, hide_input=True),
) -> None:
    """Verify and save credentials for a registry."""
    path = _run(lambda ops: ops.login(registry, username, password))
    typer.echo(f"Login succeeded; credentials saved to {path}")


@app.command("link-flags")
def link_flags(
    image: str = typer.Argument(..., help="Package image name"),
) -> None:
    """Print linker flags for a stored package, fetching it if needed."""
    typer.echo(" ".join(_run(lambda ops: ops.link_flags(image))))


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
