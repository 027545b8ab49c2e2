"""
Logging setup for the P2P transport node.

Modules in this project only ever create a module logger with
``logging.getLogger(__name__)``. Handlers are attached here, once, by the
process entry point so that importing the library never touches the disk.
"""

import os
import logging
from typing import Optional

LOG_FORMAT = '%(asctime)s [%(levelname)s] [%(filename)s:%(lineno)d] %(message)s'
LOG_FILE_NAME = "transport.log"

# Loggers of every module that belongs to the transport core
TRANSPORT_LOGGERS = (
    "tls_policy",
    "tls_identity",
    "tls_connection",
    "downgrading_listener",
    "node_config",
    "transport_node",
)


def setup_logger(level=logging.INFO, log_dir: Optional[str] = "logs") -> logging.Logger:
    """Attach file and console handlers to the transport loggers.

    The file handler records everything at DEBUG for later auditing, the
    console handler only shows ``level`` and above. Calling this more than
    once does not duplicate handlers.

    Args:
        level: Logging level for console output (DEBUG, INFO, WARNING, ...)
        log_dir: Directory for ``transport.log``. ``None`` disables file logging.

    Returns:
        Logger: The root transport logger (``transport_node``)
    """
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = None
    if log_dir:
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)
        file_handler = logging.FileHandler(os.path.join(log_dir, LOG_FILE_NAME))
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    for name in TRANSPORT_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(logging.DEBUG if file_handler else level)
        for handler in list(logger.handlers):
            if getattr(handler, "_transport_handler", False):
                logger.removeHandler(handler)
                handler.close()
        for handler in (file_handler, console_handler):
            if handler is None:
                continue
            handler._transport_handler = True
            logger.addHandler(handler)
        logger.propagate = False

    node_logger = logging.getLogger("transport_node")
    node_logger.debug(f"Transport logging initialized (console level {logging.getLevelName(level)}, log dir {log_dir})")
    return node_logger
