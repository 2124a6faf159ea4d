"""Error types raised by the patient queue domain and store."""


class PatientQueueError(Exception):
    """Base class for patient queue errors."""


class NotFoundError(PatientQueueError):
    """A queue entry, patient or doctor id did not resolve."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidTransitionError(PatientQueueError):
    """A queue entry update would break its lifecycle rules."""


class ValidationError(PatientQueueError, ValueError):
    """Domain value outside its allowed range."""


class StaleEntryError(InvalidTransitionError):
    """The entry changed status after it was read, so a dependent update was refused."""
