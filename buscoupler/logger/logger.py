import logging
import sys

from .bufferhandler import BufferHandler
from .formatter import JsonFormatter

# Single global buffer for all driver logs
shared_buffer_handler = BufferHandler()
shared_buffer_handler.setFormatter(JsonFormatter())


def get_logger(name: str = "buscoupler", use_buffer: bool = False):
    """Return a logger that shares the same buffer handler."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    # Always ensure a StreamHandler exists
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(JsonFormatter())
        logger.addHandler(stream_handler)

    if use_buffer:
        if not any(isinstance(h, BufferHandler) for h in logger.handlers):
            logger.addHandler(shared_buffer_handler)

    return logger, shared_buffer_handler
