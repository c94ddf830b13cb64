"""Logging configuration for etcdrecover."""

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Loggers of the gRPC stack underneath the etcd client
QUIET_LOGGERS = ("grpc", "etcd3", "urllib3")


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """
    Setup logging configuration for the CLI.

    Handlers installed by an earlier call are replaced, so the root logger
    never writes a record twice.

    Args:
        verbose: Enable verbose/debug logging
        log_file: Optional log file path; it always receives DEBUG records
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, "_etcdrecover", False):
            root_logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler._etcdrecover = True

    root_logger.setLevel(logging.DEBUG if log_file else level)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        file_handler._etcdrecover = True
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
