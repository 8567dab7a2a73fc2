"""Allow `python -m reactloop` to launch the CLI."""

from reactloop.main import cli

cli()
