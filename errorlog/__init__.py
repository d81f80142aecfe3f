"""
Resilient exception logging.

The entry point is ``errorlog.error_logger.ErrorLogger``; backends live in
the ``stores`` package.
"""

__version__ = "1.0.0"
