"""Custom exceptions for farm-out dispatch."""


class FarmoutError(Exception):
    """Base class for dispatch engine errors."""
    pass


class ReservationNotFoundError(FarmoutError):
    """Raised when a reservation cannot be found."""
    pass


class RankingUnavailableError(FarmoutError):
    """Raised when the remote ranking function cannot produce a usable list."""
    pass


class MessageDeliveryError(FarmoutError):
    """Raised by a message sender when the provider rejects or cannot be reached."""
    pass
