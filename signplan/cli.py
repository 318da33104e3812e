"""Command-line interface for signing plan generation."""

import click
import os
import sys
from pathlib import Path
from . import __version__
from .binary import describe, inspect_binary
from .config import SigningConfig, load_config, load_default_config, ConfigError
from .containers import ArchiveFormatError
from .content import get_content_hash, hash_to_string
from .logging import configure_logging
from .plan import MissingCertificateError
from .tracking import TrackingEngine

PLAN_FILE_NAME = "SigningPlan.json"


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--quiet", "-q", is_flag=True, help="Only log warnings and errors")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    help="Also write log output to this file",
)
def main(verbose, quiet, log_file):
    """Decide which build outputs must be signed, and with which certificate."""
    configure_logging(verbose=verbose, quiet=quiet, log_file=Path(log_file) if log_file else None)


def _load_signing_config(config):
    try:
        if config:
            signing_config = load_config(config)
            click.echo(f"Loaded config: {config}")
        else:
            signing_config = load_default_config()
            if signing_config:
                click.echo(f"Loaded default config: {signing_config.source}")
            else:
                signing_config = SigningConfig({})
    except (FileNotFoundError, ConfigError) as e:
        click.echo(f"❌ Config error: {e}", err=True)
        sys.exit(1)

    return signing_config.apply_environment_overrides()


@main.command()
@click.argument(
    "files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False)
)
@click.option(
    "--config",
    type=click.Path(exists=True),
    help="Configuration file (YAML). Defaults to .signing/config.yaml if present.",
)
@click.option(
    "--temp-dir",
    type=click.Path(file_okay=False),
    help="Directory for extracted container contents and reports (overrides config file)",
)
@click.option(
    "--output",
    type=click.Path(dir_okay=False),
    help=f"Where to write the plan (default: <temp-dir>/{PLAN_FILE_NAME})",
)
@click.option(
    "--strict-containers",
    is_flag=True,
    help="Fail the run when a container cannot be unpacked",
)
@click.option(
    "--sequential",
    is_flag=True,
    help="Hash input files one at a time",
)
def plan(files, config, temp_dir, output, strict_containers, sequential):
    """Build the signing plan for FILES."""
    signing_config = _load_signing_config(config)
    signing_config = signing_config.merge_with_cli_args(
        temp_dir=temp_dir,
        fail_on_container_error=True if strict_containers else None,
    )

    engine = TrackingEngine.from_config(signing_config)
    paths = [os.path.abspath(path) for path in files]

    click.echo(f"Planning {len(paths)} file(s)...")
    try:
        signing_plan = engine.run(paths, parallel=not sequential)
    except MissingCertificateError as e:
        click.echo(f"❌ {e}", err=True)
        for entry in e.entries:
            click.echo(
                f"  - {entry.file_name} (suggested: {entry.suggested_certificate or 'none'})",
                err=True,
            )
        sys.exit(1)
    except (ArchiveFormatError, OSError) as e:
        click.echo(f"❌ Planning failed: {e}", err=True)
        sys.exit(1)

    if output is None:
        output = os.path.join(signing_config.get_temp_dir(), PLAN_FILE_NAME)
    output_dir = os.path.dirname(output)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    signing_plan.save(output)

    click.echo("\n✅ Signing plan complete!")
    click.echo(f"Files to sign: {len(signing_plan.files_to_sign)}")
    click.echo(f"Containers: {len(signing_plan.containers)}")
    click.echo(f"Copy instructions: {len(signing_plan.files_to_copy)}")

    for failure in signing_plan.failed_containers:
        click.echo(
            f"⚠️  Container not unpacked, nested files unsigned: {failure.path} ({failure.reason})",
            err=True,
        )

    click.echo(f"Plan: {output}")


@main.command("inspect")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
def inspect_command(file):
    """Display the signing-relevant attributes of FILE."""
    try:
        info = inspect_binary(file)
    except OSError as e:
        click.echo(f"❌ Failed to read {file}: {e}", err=True)
        sys.exit(1)

    click.echo(describe(info, file))


@main.command("hash")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
def hash_command(file):
    """Print the content hash of FILE."""
    try:
        click.echo(hash_to_string(get_content_hash(file)))
    except OSError as e:
        click.echo(f"❌ Failed to read {file}: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
