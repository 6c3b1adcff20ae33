"""
Error reporting sink.

Only the context string, the exception class name and caller-supplied extras
are reported. Exception messages are never forwarded because they can carry
ciphertext, key material or user content.
"""

import logging
from typing import Any, Callable, Dict, Optional


logger = logging.getLogger(__name__)

Sink = Callable[[str, Dict[str, Any]], None]


def get_error_name(error: BaseException) -> str:
    """Class name of the error, or 'UnknownError'"""
    name = type(error).__name__
    return name or "UnknownError"


class ErrorReporter:
    """
    Reports failures to the log and, optionally, an external sink
    (crash reporting service, test recorder).
    """

    def __init__(self, sink: Optional[Sink] = None):
        self.sink = sink

    def report(self, context: str, error: BaseException, extra: Optional[Dict[str, Any]] = None):
        """
        Report an error.

        Args:
            context: Short description of what was being attempted
            error: The exception that was caught
            extra: Additional non-sensitive fields
        """
        safe_extra = {"error_name": get_error_name(error)}
        if extra:
            safe_extra.update(extra)

        logger.error("%s %s", context, safe_extra)

        if self.sink is not None:
            self.sink(context, safe_extra)


default_reporter = ErrorReporter()
