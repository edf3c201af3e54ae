import logging
import os
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: Union[int, str, None] = None) -> None:
    """
    Set up logging for scripts and examples.

    The library itself only creates module loggers under 'clear_dense'; an
    application calls this (or its own logging setup) to see their output.

    Args:
        level: Log level name or number. Defaults to the LOG_LEVEL environment
               variable, then INFO.
    """
    if level is None:
        level = os.getenv('LOG_LEVEL', 'INFO')
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger('clear_dense').setLevel(level)
