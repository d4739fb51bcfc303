"""mdxflow CLI commands.

Each command module contains the business logic for a CLI command.
The cli.py module handles typer options and argument parsing,
then delegates to these command functions.
"""

from mdxflow.commands.check import check_command
from mdxflow.commands.run import run_command

__all__ = [
    "check_command",
    "run_command",
]
