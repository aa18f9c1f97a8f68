"""Common utilities and configuration for mlimage."""

from .config import Config
from .errors import MlImageError
from .logger import get_logger, setup_logging

__all__ = ['Config', 'MlImageError', 'get_logger', 'setup_logging']
