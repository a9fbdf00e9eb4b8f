"""Domain exceptions raised by the service layer.

Each exception carries the HTTP status the API responds with; the
FastAPI application installs a single handler for `DomainError`.
"""


class DomainError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DomainError):
    status_code = 404


class PermissionDeniedError(DomainError):
    status_code = 403


class ValidationFailedError(DomainError):
    status_code = 400


class ConflictError(DomainError):
    status_code = 400


class InvalidTransitionError(DomainError):
    status_code = 400

    def __init__(self, source, target):
        self.source = getattr(source, "value", source)
        self.target = getattr(target, "value", target)
        super().__init__(f'invalid status transition from "{self.source}" to "{self.target}"')
