"""Logging setup for the mdxflow CLI.

Library modules only call ``logging.getLogger(__name__)``; handlers are
installed here, by the CLI, so embedding applications keep control.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING}


def configure_logging(verbose: bool = False) -> None:
    """Route the ``mdxflow`` logger to stderr through rich.

    Verbose runs show the executor trace (DEBUG); otherwise INFO, so Log
    nodes at info level and above are visible.
    """
    logger = logging.getLogger("mdxflow")
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=verbose,
        markup=False,
        rich_tracebacks=verbose,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False
