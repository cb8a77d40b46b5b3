class NegotiationError(Exception):
    """Base exception for the negotiation engine."""

    pass


class ValidationError(NegotiationError):
    """Raised when an amount is out of range, non-finite or malformed."""

    pass


class UnauthorizedTransitionError(NegotiationError):
    """Raised when the role/state pair is not in the transition table, or the actor is not the one bound to the service."""

    pass


class ConflictError(NegotiationError):
    """Raised when OCC detects a version conflict (another actor already changed the negotiation)."""

    pass


class NotFoundError(NegotiationError):
    """Raised when there is no negotiation (or service) for the given service id."""

    pass


class StoreRecoveryError(NegotiationError):
    """Raised when the persistence gateway fails to load or write a negotiation checkpoint."""

    pass


class CorruptedCheckpointError(StoreRecoveryError):
    """Raised when a persisted negotiation no longer validates against the model."""

    pass
