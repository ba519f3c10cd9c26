import logging
import sys


def setup_logger(level=logging.INFO, stream=None):
    """Sends log records to stdout (or `stream`) through a single handler on the root logger."""
    logger = logging.getLogger()

    if logger.hasHandlers():
        logger.handlers.clear()

    logger.setLevel(level)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)

    # Debug output names the module and line each message comes from
    if level == logging.DEBUG:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s (%(filename)s:%(lineno)d)'
        )
    else:
        formatter = logging.Formatter('%(levelname)s: %(message)s' if level > logging.INFO else '%(message)s')

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger
