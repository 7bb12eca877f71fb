class ReservationError(Exception):
    """Base class for errors raised by the reservation service."""


class InsufficientStock(ReservationError):
    def __init__(self, sku_id: str, requested: int, available=None):
        self.sku_id = sku_id
        self.requested = requested
        self.available = available
        if available is None:
            message = f"SKU {sku_id} does not exist"
        else:
            message = f"SKU {sku_id}: requested {requested}, only {available} available"
        super().__init__(message)


class TransientContention(ReservationError):
    """Lock wait timed out or the transaction lost a serialization race. Safe to retry."""


class StorageUnavailable(ReservationError):
    """The backing store failed in a way a retry will not fix."""


class OrderNotFound(ReservationError):
    pass


class InvalidTransition(ReservationError):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move order from {current.value} to {requested.value}")
