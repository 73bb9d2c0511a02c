"""Errors raised by the provisioning engine.

Each carries the HTTP status the API layer answers with.
"""


class ProvisioningError(Exception):
    status_code = 500
    default_message = 'Provisioning failed'

    def __init__(self, message=None, *, errors=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.errors = errors or []


class ValidationError(ProvisioningError):
    """Bad input. Raised before anything is written."""

    status_code = 400
    default_message = 'Invalid request'


class NotFoundError(ProvisioningError):
    status_code = 404
    default_message = 'Not found'


class ConflictError(ProvisioningError):
    """Another process already changed the record."""

    status_code = 409
    default_message = 'Conflict'


class IdentityConflictError(ConflictError):
    default_message = 'Could not resolve the employee identity because of concurrent updates'


class AllocationError(ProvisioningError):
    """Fatal for the call. Nothing local has been committed."""

    status_code = 500
    default_message = 'Unable to allocate a unique employee number'


class AllocationExhaustedError(AllocationError):
    pass


class DeadlineExceeded(AllocationError):
    status_code = 504
    default_message = 'Provisioning did not finish before its deadline'
