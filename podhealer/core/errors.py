"""
Pod Healer - Error Taxonomy
===========================

FetchError aborts one scan cycle. TransientActionError is retried inside
the executor, PermanentActionError is reported as a failed remediation
and feeds the circuit breaker. ClusterUnavailableError is fatal at startup.
A gate denial is not an exception; see ``cooldown_store.Denied``.
"""


class HealerError(Exception):
    """Base class for Pod Healer errors."""


class FetchError(HealerError):
    """Listing pods failed; the current cycle is skipped."""


class ActionError(HealerError):
    """A remediation call against the cluster failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
        self.attempts = 1


class TransientActionError(ActionError):
    """Timeouts, conflicts, throttling and server errors."""


class PermanentActionError(ActionError):
    """Errors that retrying cannot fix, such as forbidden or invalid requests."""


class TargetNotFoundError(ActionError):
    """The object the action targets no longer exists."""


class ClusterUnavailableError(HealerError):
    """The cluster API cannot be reached at all."""
