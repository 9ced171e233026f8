class BookingError(ValueError):
    """Base class for user-visible booking-engine errors."""


class BookingValidationError(BookingError):
    pass


class OutsideWorkingHoursError(BookingValidationError):
    pass


class ScheduleLookupError(BookingValidationError):
    pass


class BookingNotFoundError(BookingError):
    pass


class ProviderNotFoundError(BookingNotFoundError):
    pass


class BookingConflictError(BookingError):
    pass


class SlotUnavailableError(BookingConflictError):
    pass


class DuplicateBookingError(BookingConflictError):
    pass


class InvalidTransitionError(BookingConflictError):
    def __init__(self, current: str, target: str, actor: str) -> None:
        super().__init__(f"Invalid status transition for {actor}: {current} -> {target}")
        self.current = current
        self.target = target
        self.actor = actor


class BookingPermissionError(BookingError):
    pass


class BookingDependencyError(BookingError):
    """Storage or collaborator failure after retries were exhausted."""
