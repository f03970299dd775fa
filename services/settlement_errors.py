"""
Settlement Exceptions
Error taxonomy shared by the escrow ledger, dispute workflow and payment processing
"""

# ============ SETTLEMENT EXCEPTIONS ============


class SettlementError(Exception):
    """Base exception for settlement core errors"""

    pass


class NotFoundError(SettlementError):
    """Missing order, subscription, escrow entry or dispute. Never retried."""

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} not found: {identifier}")


class InvalidStateError(SettlementError):
    """Requested transition is not allowed from the current status. Never retried."""

    pass


class ValidationError(SettlementError):
    """Caller supplied input that fails a business rule"""

    pass


class DisputeWindowError(ValidationError):
    """Dispute raised outside the allowed window after subscription expiry"""

    pass


class OwnershipError(ValidationError):
    """Actor does not own the resource they are acting on"""

    pass
