"""Live chart stream synchronization engine."""

from .version import APP_VERSION

__version__ = APP_VERSION
