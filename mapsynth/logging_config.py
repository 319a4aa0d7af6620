"""
Logging setup for scenario builds.

Every mapsynth module logs through logging.getLogger(__name__), so handlers
are attached once to the "mapsynth" package logger: console at the chosen
level, plus a DEBUG run.log in the output directory when one is given.
Chatty IO libraries are held at WARNING so per-chunk reads do not flood
run.log.
"""

import logging
import os

import osmnx as ox

PACKAGE_LOGGER = "mapsynth"

# Third-party loggers held at WARNING
QUIET_LOGGERS = ("pyogrio", "fiona", "urllib3", "matplotlib")

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(output_dir=None, console_level=logging.INFO):
    """
    Attach console and run.log handlers to the mapsynth logger.

    Calling it again replaces the handlers, so repeated runs in one process
    do not duplicate lines.

    Args:
        output_dir: Directory for run.log (append mode); None for console only
        console_level: Console threshold; run.log always records DEBUG

    Returns:
        The configured package logger
    """
    root = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(formatter)
    root.addHandler(console)

    if output_dir is not None:
        os.makedirs(output_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(output_dir, "run.log"), mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    # osmnx keeps its own console logging; route graph loading through ours
    ox.settings.log_console = False
    return root
