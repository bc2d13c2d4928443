#farehold/errors.py
from typing import Dict, List, Optional


class FareholdError(Exception):
    pass


class ValidationError(FareholdError):
    """Passenger data failed a step gate. Never reaches the network."""

    def __init__(self, errors: Dict[int, List[str]]):
        self.errors = errors
        parts = [f"passenger {idx + 1}: {', '.join(fields)}" for idx, fields in sorted(errors.items())]
        super().__init__("; ".join(parts) or "validation failed")


class ExpirationError(FareholdError):
    """Offer is expired, stale or inside the pre-expiry buffer."""

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(
            message or "This flight offer has expired. Please refresh your search to get current prices."
        )


class SupplierError(FareholdError):

    def __init__(self, source: str, message: str):
        self.source = source
        self.message = message
        super().__init__(message)


class SearchDiscarded(FareholdError):
    pass
