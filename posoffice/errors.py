# Overview: Domain error kinds raised by the service layer.

"""
posoffice domain errors

Every service raises one of these synchronously when an invariant would be
violated. They carry a stable `code` so the transport layer (not part of this
package) can map them to responses without parsing messages.

All kinds subclass ValueError, matching how the services treat bad input and
rule violations alike as value problems.
"""


class DomainError(ValueError):
    """Base class for business rule violations."""

    code = "DOMAIN_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(DomainError):
    """Referenced entity id does not resolve."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id, details: dict | None = None):
        super().__init__(f"{entity} not found with ID: {entity_id}", details)
        self.entity = entity
        self.entity_id = entity_id


class DuplicateValueError(DomainError):
    """Unique-field collision (name, SKU, barcode, email, codes)."""

    code = "DUPLICATE_VALUE"


class DuplicateNameError(DuplicateValueError):
    pass


class InvalidOperationError(DomainError):
    """Action not permitted in the entity's current state."""

    code = "INVALID_OPERATION"


class HasChildrenError(InvalidOperationError):
    pass


class HasProductsError(InvalidOperationError):
    pass


class InvalidTransitionError(DomainError):
    """Order status change outside the transition table."""

    code = "INVALID_TRANSITION"


class InvalidQuantityError(DomainError):
    code = "INVALID_QUANTITY"


class InvalidAmountError(DomainError):
    code = "INVALID_AMOUNT"


class AmountMismatchError(InvalidAmountError):
    pass


class InsufficientStockError(DomainError):
    code = "INSUFFICIENT_STOCK"


class ExhaustedRetriesError(DomainError):
    """Identifier generation found no unique candidate within its attempts."""

    code = "EXHAUSTED_RETRIES"
