"""
ocipkg CLI

- pack: Pack a directory (or a single file) into an OCI-layout archive
- load: Verify an archive and expand it into the local store
- get: Pull an image from its registry into the local store
- push: Push an archive to the registry named in it
- image-directory: Print the local store directory for an image name
- list: List images in the local store
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from . import __version__
from .distribution import get_image, push_image
from .image import load as load_archive
from .image import pack_dir, pack_files
from .image_name import ImageName
from .local import LocalStore
from .mappers import run_and_exit
from .settings import create_settings_from_env

app = typer.Typer(name="ocipkg", help="Package files into OCI images")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"ocipkg {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True,
                                 help="Show version and exit"),
) -> None:
    """Package files into OCI images and move them to and from registries."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )


@app.command()
def pack(
    input_path: str = typer.Argument(..., metavar="INPUT", help="Directory (or single file) to pack"),
    output: str = typer.Argument(..., help="Output archive; the suffix is forced to .tar"),
    tag: Optional[str] = typer.Option(None, "-t", "--tag", help="Image name; a random UUID name if not set"),
    compression: str = typer.Option("gzip", "--compression", help="Layer compression: gzip, zstd or none"),
) -> None:
    """Pack a directory into an oci-archive tar file."""

    def _pack() -> None:
        src = Path(input_path)
        if src.is_file():
            out = pack_files([src], output, name=tag, compression=compression)
        else:
            out = pack_dir(src, output, name=tag, compression=compression)
        typer.echo(str(out))

    run_and_exit(_pack)


@app.command()
def load(
    input_path: str = typer.Argument(..., metavar="INPUT", help="Input oci-archive"),
    no_unpack: bool = typer.Option(False, "--no-unpack", help="Register only; do not expand layers"),
) -> None:
    """Load and expand an archive into the local store."""

    def _load() -> None:
        store = LocalStore.default(create_settings_from_env())
        for name in load_archive(Path(input_path), store, unpack=not no_unpack):
            typer.echo(str(name))

    run_and_exit(_load)


@app.command()
def get(
    image_name: str = typer.Argument(..., help="Image name, e.g. ghcr.io/owner/repo:tag"),
    no_unpack: bool = typer.Option(False, "--no-unpack", help="Register only; do not expand layers"),
) -> None:
    """Get an image from its registry and save it in the local store."""

    def _get() -> None:
        name = ImageName.parse(image_name)
        settings = create_settings_from_env()
        digest = asyncio.run(get_image(name, settings=settings, unpack=not no_unpack))
        typer.echo(f"{name} {digest}")

    run_and_exit(_get)


@app.command()
def push(
    input_path: str = typer.Argument(..., metavar="INPUT", help="Input oci-archive"),
) -> None:
    """Push an oci-archive to the registry named in it."""

    def _push() -> None:
        settings = create_settings_from_env()
        digest = asyncio.run(push_image(Path(input_path), settings=settings))
        typer.echo(str(digest))

    run_and_exit(_push)


@app.command("image-directory")
def image_directory(
    image_name: str = typer.Argument(..., help="Image name"),
) -> None:
    """Print the local store directory used for an image name."""

    def _image_directory() -> None:
        name = ImageName.parse(image_name)
        typer.echo(str(LocalStore.default(create_settings_from_env()).image_dir(name)))

    run_and_exit(_image_directory)


@app.command("list")
def list_images() -> None:
    """List images in the local store."""

    def _list() -> None:
        for name in LocalStore.default(create_settings_from_env()).list():
            typer.echo(str(name))

    run_and_exit(_list)


if __name__ == "__main__":
    app()
