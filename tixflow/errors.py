"""Domain errors and their HTTP mapping."""

from fastapi import Request
from fastapi.responses import ORJSONResponse

from .infra.log import logger


class DomainError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ValidationFailed(DomainError):
    status_code = 400


class NotFound(DomainError):
    status_code = 404


class InsufficientAvailability(DomainError):
    status_code = 400


class DuplicateReference(DomainError):
    status_code = 409


# --- webhook trust boundary ---
class SignatureMissing(DomainError):
    status_code = 400


class SignatureInvalid(DomainError):
    status_code = 401


class WebhookMisconfigured(DomainError):
    status_code = 500


class MalformedWebhook(DomainError):
    status_code = 400


# --- payment ledger desync ---
class UnmatchedReference(DomainError):
    status_code = 404


class PaymentStateError(DomainError):
    status_code = 409


class IllegalTransition(PaymentStateError):
    pass


async def domain_error_handler(
    request: Request, exc: DomainError
) -> ORJSONResponse:
    if exc.status_code >= 500:
        logger.opt(exception=exc).error(
            f"{type(exc).__name__} on {request.url.path}: {exc.message}"
        )
    else:
        logger.warning(
            f"{type(exc).__name__} on {request.url.path}: {exc.message}"
        )
    return ORJSONResponse(
        status_code=exc.status_code, content={"detail": exc.message}
    )
