class RemovalEngineError(Exception):
    """Base class for removal engine errors."""


class RemovalNotFoundError(RemovalEngineError):
    """Raised when a removal request id does not exist."""


class InvalidTransitionError(RemovalEngineError):
    """Raised when a removal request is moved along an edge the lifecycle forbids."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition removal request from {current} to {target}")
        self.current = current
        self.target = target


class PersistenceError(RemovalEngineError):
    """Raised when writing a single item's changes to the database fails."""


class EmailTransportError(RemovalEngineError):
    """Raised by an email transport when the message could not be handed off."""


class FormSubmissionError(RemovalEngineError):
    """Raised by a form submitter when a broker's opt-out form could not be completed."""
