"""CLI entry point for aumai-imagemanifest."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import IO, NoReturn

import click
from pydantic import ValidationError

from .core import ManifestBuilder
from .errors import InvalidInput, ManifestError
from .models import ImageManifest, ManifestConfig
from .signing import verify_signed_manifest


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


def _fail(exc: ManifestError) -> NoReturn:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(exc.exit_code)


@click.group()
@click.version_option(package_name="aumai-imagemanifest")
def main() -> None:
    """AumAI ImageManifest — registry manifests for saved image archives."""


@main.command("generate")
@click.argument("archive", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "-k",
    "--key",
    "key_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="PEM private key (EC or RSA) to sign the manifest with.",
)
@click.option("-v", "--verbose", is_flag=True, help="Switch to verbose output.")
@click.option(
    "--lenient",
    is_flag=True,
    help="Drop layers that are not on the chain instead of failing.",
)
@click.option(
    "--architecture",
    default="amd64",
    show_default=True,
    help="Architecture recorded in the manifest.",
)
@click.option(
    "-o",
    "--output",
    type=click.File("w", encoding="utf-8", lazy=True),
    default="-",
    help="Write the manifest here instead of standard output.",
)
def generate_command(
    archive: Path,
    key_path: Path | None,
    verbose: bool,
    lenient: bool,
    architecture: str,
    output: IO[str],
) -> None:
    """Print the manifest for the saved image ARCHIVE."""
    config = ManifestConfig(
        archive_path=archive,
        key_path=key_path,
        verbose=verbose,
        strict=not lenient,
        architecture=architecture,
    )
    _configure_logging(config.verbose)
    try:
        document = ManifestBuilder(config).render()
    except ManifestError as exc:
        _fail(exc)

    output.write(document + "\n")


@main.command("inspect")
@click.argument("archive", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--lenient",
    is_flag=True,
    help="Drop layers that are not on the chain instead of failing.",
)
def inspect_command(archive: Path, lenient: bool) -> None:
    """Show the image identity and layer chain of ARCHIVE."""
    config = ManifestConfig(archive_path=archive, strict=not lenient)
    _configure_logging(config.verbose)
    try:
        result = ManifestBuilder(config).build()
    except ManifestError as exc:
        _fail(exc)

    click.echo(f"Name     : {result.identity.name or '(unknown)'}")
    click.echo(f"Tag      : {result.identity.tag or '(unknown)'}")
    click.echo(f"\nLayers ({len(result.chain)}), top first:")
    for record in reversed(result.chain):
        parent = record.parent_id[:12] or "-"
        size_kb = record.blob_size / 1024
        click.echo(
            f"  {record.id[:12]:<12}  parent {parent:<12}  "
            f"{size_kb:8.1f} KB  {record.blob_digest[:23]}..."
        )


@main.command("verify")
@click.argument("manifest_file", type=click.File("rb"))
def verify_command(manifest_file: IO[bytes]) -> None:
    """Check the signatures of a signed MANIFEST_FILE."""
    _configure_logging(False)
    try:
        payload = verify_signed_manifest(manifest_file.read())
        try:
            manifest = ImageManifest.model_validate(json.loads(payload))
        except ValidationError as exc:
            raise InvalidInput(f"signed payload is not an image manifest: {exc.error_count()} error(s)") from exc
    except ManifestError as exc:
        _fail(exc)

    click.echo(f"Signatures OK: {manifest.name}:{manifest.tag}")
    click.echo(f"  Layers : {len(manifest.fs_layers)}")


if __name__ == "__main__":
    main()
