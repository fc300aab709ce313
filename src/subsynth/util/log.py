"""Logging setup.

Same line format for every module. Services report progress as plain text
on the bus "log" topic; BusLogForwarder turns those lines into records on
the "subsynth.bus" logger so they share the console and file output.
"""

import logging
import sys
from pathlib import Path
from typing import Optional


LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
NOISY_LOGGERS = ('aiohttp', 'asyncio', 'charset_normalizer')


def setup_logging(log_file: Optional[Path] = None, level: int = logging.INFO):
    """Send records to stdout and, when log_file is given, to that file too."""
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


class BusLogForwarder:
    """Bus "log" topic subscriber that re-emits each line as a log record.

    Lines that look like failures ("<service>: <target>: <error>") are
    logged at WARNING, everything else at INFO.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger('subsynth.bus')
        self.lines = 0

    def __call__(self, message: str) -> None:
        self.lines += 1
        if message.count(': ') >= 2:
            self.logger.warning(message)
        else:
            self.logger.info(message)
