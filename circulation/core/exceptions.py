class CirculationError(ValueError):
    """Base class for circulation domain errors."""


class NotFoundError(CirculationError):
    """A referenced loan, account, book, reservation or notification does not exist."""


class InvalidStateError(CirculationError):
    """The entity is not in a state that allows the requested operation."""


class TransientStoreError(CirculationError):
    """The data layer failed mid-transaction; all effects were rolled back."""
