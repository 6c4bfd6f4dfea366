"""Allow running the CLI via ``python -m epicflow``."""

from epicflow.cli import cli

cli()
