from .bufferhandler import BufferHandler
from .formatter import JsonFormatter
from .logger import get_logger, shared_buffer_handler

__all__ = ["get_logger", "BufferHandler", "JsonFormatter", "shared_buffer_handler"]
