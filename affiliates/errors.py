class AffiliateServiceError(Exception):
    pass


class ValidationError(AffiliateServiceError):
    pass


class NotFoundError(AffiliateServiceError):
    pass


class StateError(AffiliateServiceError):
    pass


class FullyReversedError(StateError):
    pass


class AllocationConflictError(StateError):
    pass


class IdempotencyConflictError(StateError):
    pass


class StorageUnavailable(AffiliateServiceError):
    """The store could not be reached or did not answer in time. Safe to retry."""
