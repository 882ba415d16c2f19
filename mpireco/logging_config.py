"""
Logging Configuration
Console and file logging for reconstruction runs, with Python warnings
(e.g. InterpolationWarning) routed into the same handlers.
"""
import logging
import sys
from typing import List, Optional

PACKAGE_LOGGER = "mpireco"
WARNINGS_LOGGER = "py.warnings"

# time, level, logger name, message
RECO_FORMAT = '%(asctime)s %(levelname)-7s [%(name)s] %(message)s'
RECO_DATEFMT = '%H:%M:%S'

_HANDLER_TAG = "_mpireco_handler"


def _owned(handlers) -> List[logging.Handler]:
    return [h for h in handlers if getattr(h, _HANDLER_TAG, False)]


def _detach(logger: logging.Logger) -> None:
    for handler in _owned(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def teardown_logging() -> None:
    """Removes and closes the handlers installed by `setup_logging`."""
    _detach(logging.getLogger(PACKAGE_LOGGER))
    _detach(logging.getLogger(WARNINGS_LOGGER))
    logging.captureWarnings(False)


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None,
                  propagate: bool = False, capture_warnings: bool = True) -> logging.Logger:
    """
    Configures the logger for the 'mpireco' namespace.

    Calling it again replaces the handlers of the previous call, so notebooks
    and test suites can reconfigure freely.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional path to save logs to a file (overwritten).
        propagate: Also pass records on to the root logger. Off by default so
            an application that configured the root logger sees no duplicates.
        capture_warnings: Route Python warnings into the same handlers.

    Returns:
        logging.Logger: The configured 'mpireco' logger.
    """
    teardown_logging()

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    logger.propagate = propagate

    formatter = logging.Formatter(RECO_FORMAT, datefmt=RECO_DATEFMT)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    warnings_logger = logging.getLogger(WARNINGS_LOGGER)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_TAG, True)
        logger.addHandler(handler)
        if capture_warnings:
            warnings_logger.addHandler(handler)
    logging.captureWarnings(capture_warnings)

    logger.debug("Logging initialized (level %s, file %s).", logging.getLevelName(level), log_file)
    return logger
