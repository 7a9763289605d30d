"""Error taxonomy shared by the admission pipeline and its callers."""

from __future__ import annotations


class ClientInputError(ValueError):
    """Raised for malformed payloads and unknown message kinds."""

    code = "invalid_input"


class DomainRejection(ValueError):
    """Base for business-rule refusals reported to the submitter only."""

    code = "rejected"


class AuctionNotFound(DomainRejection, LookupError):
    code = "auction_not_found"

    def __init__(self, auction_id: str) -> None:
        super().__init__(f"auction {auction_id} not found")
        self.auction_id = auction_id


class AuctionNotActive(DomainRejection):
    code = "auction_not_active"


class PriceTooLow(DomainRejection):
    code = "price_too_low"


class BelowIncrement(DomainRejection):
    code = "below_increment"


class AuctionConflict(ValueError):
    code = "conflict"

    def __init__(self, auction_id: str) -> None:
        super().__init__(f"auction {auction_id} already exists")
        self.auction_id = auction_id


class QueueProcessingError(RuntimeError):
    """Raised when an outbox item keeps failing after every retry."""


class ConnectionLost(ConnectionError):
    """Raised when a client session gives up reconnecting."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"connection lost after {attempts} reconnect attempts")
        self.attempts = attempts
