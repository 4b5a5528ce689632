# SPDX-License-Identifier: BSD-2
import logging

logger = logging.getLogger(__name__)


session_modules = [
    "session",
    "tcti",
    "crypto",
    "esys",
    "simulator",
]

# Applications tune these, e.g. session_loggers["tcti"].setLevel(logging.DEBUG)
session_loggers = {
    module: logging.getLogger(f"TSS.{module}") for module in session_modules
}


def set_level(level, modules=None):
    """Set the log level of the session layer loggers.

    Args:
        level (int or str): A logging level, for example logging.DEBUG or "DEBUG".
        modules (list of str): The modules to change, defaults to all of them.

    Raises:
        KeyError: if a module has no logger.
    """
    if modules is None:
        modules = session_modules
    for module in modules:
        session_loggers[module].setLevel(level)
