"""
Errors raised by webhook handlers. The class decides whether the provider
is told to retry (503) or to stop (200 with status "failed").
"""


class HandlerError(Exception):
    """Base class for webhook handler failures."""


class RetryableHandlerError(HandlerError):
    """Transient failure - the same delivery may succeed later."""


class TerminalHandlerError(HandlerError):
    """Permanent failure - retrying the delivery cannot help."""


class TenancyViolation(TerminalHandlerError):
    """A write would link records belonging to two different organizations."""
