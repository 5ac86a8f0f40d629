"""
auditpipe command line tools.

    auditpipe check-config auditpipe.yaml
    auditpipe verify-log /var/log/auditpipe/audit_20240101_000000_000000.jsonl
"""

import sys
from pathlib import Path
from typing import Optional

import click

from .config import Config
from .exceptions import ConfigurationError
from .sinks.jsonl import verify_chain


@click.group()
def cli() -> None:
    """Audit pipeline tools."""


@cli.command("check-config")
@click.argument("config_path", required=False)
def check_config(config_path: Optional[str]) -> None:
    """Validate a pipeline configuration file."""
    try:
        config = Config.load_from_file(config_path)
    except ConfigurationError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not config.pipelines:
        click.echo("⚠️  No pipelines defined")
        return

    for name, pipeline in config.pipelines.items():
        sinks = ", ".join(sink_name for sink_name, _ in pipeline.sink_entries()) or "none"
        click.echo(f"✅ {name}: sinks={sinks} deliver_empty={pipeline.deliver_empty}")


@cli.command("verify-log")
@click.argument("paths", nargs=-1, required=True, type=click.Path())
def verify_log(paths) -> None:
    """Verify the hash chain of JSONL audit files."""
    failed = False
    for path in paths:
        result = verify_chain(Path(path))
        if result["valid"]:
            click.echo(f"✅ {path}: {result['line_count']} lines, chain intact")
            continue

        failed = True
        if "error" in result:
            click.echo(f"❌ {path}: {result['error']}")
            continue

        click.echo(f"❌ {path}: {len(result['broken_links'])} broken link(s)")
        for link in result["broken_links"]:
            click.echo(f"   line {link['line']}: {link['error']}")

    if failed:
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
