"""
Cooperative cancellation for async key and decryption flows.
"""

from typing import Optional


class OperationCancelled(Exception):
    """Raised when a flow resumes after its token was cancelled"""
    pass


class CancellationToken:
    """
    Flag shared between the owner of a unit of work and the coroutines
    doing it. The owner calls ``cancel()`` when the work is torn down; the
    coroutines check the token after every await and before every mutation.
    """

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True

    def raise_if_cancelled(self):
        if self._cancelled:
            raise OperationCancelled()


def check(token: Optional[CancellationToken]):
    """raise_if_cancelled for an optional token"""
    if token is not None:
        token.raise_if_cancelled()
