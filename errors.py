"""
Error taxonomy for the GreenMart API.

Services raise these; ``main.py`` turns every one of them into the
``{"success": false, "message": ...}`` envelope with the matching status.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str = "Something went wrong"):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 400


class BusinessRuleError(StoreError):
    status_code = 400


class ConflictError(StoreError):
    status_code = 400


class AuthenticationError(StoreError):
    status_code = 401


class PermissionDenied(StoreError):
    status_code = 403


class NotFoundError(StoreError):
    status_code = 404


class GatewayError(StoreError):
    """A hosted collaborator (payments, images) failed."""
    status_code = 500
