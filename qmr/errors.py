"""Error taxonomy.

Callers react on the class, not on the message:
NotFound drives the create path.
OwnerDeleted and IgnoreSignal are soft; the reconciler logs them and reports success.
Everything else propagates with its cause chained.
"""


class OperatorError(Exception):
    """Base class for all reconciler exceptions."""


class NotFound(OperatorError):
    """Raised by a store when the requested object does not exist."""


class WriteConflict(OperatorError):
    """Raised when a write carries a stale resourceVersion."""


class OwnerDeleted(OperatorError):
    """Raised when the owning cluster is being deleted and the fleet was never created."""


class IgnoreSignal(OperatorError):
    """Raised to skip the current reconcile without reporting a failure."""


class UnhealthyPrecondition(IgnoreSignal):
    """Raised when a rollout cannot start because a pod is not healthy."""


class PodFailedPhase(OperatorError):
    """Raised when a pod being replaced reaches the Failed phase."""


class WaitTimeout(OperatorError):
    """Raised when the poller deadline elapses before the condition holds."""


class MergeFailure(OperatorError):
    """Raised when the desired pod spec cannot be merged onto the observed one."""
