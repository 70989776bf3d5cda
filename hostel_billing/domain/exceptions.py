"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ValidationError(DomainException):
    """Request fields are missing or invalid"""

    pass


class ConflictError(DomainException):
    """Operation collides with existing state (duplicate pending request, duplicate rent period)"""

    pass


class InvalidTransitionError(ConflictError):
    """Status change not allowed from the current state"""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from {current} to {target}")


class NotFoundError(DomainException):
    """Referenced resident, rent record, request or transaction does not exist"""

    pass


class PermissionDeniedError(DomainException):
    """Caller is not allowed to act on this resource"""

    pass


class ImmutableRecordError(DomainException):
    """Attempt to modify or delete an append-only ledger row"""

    pass
