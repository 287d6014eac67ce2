"""Errors raised by the signing workflow.

Every error carries the HTTP status it maps to and an optional ``details``
dict merged into the JSON body by the handler registered in ``app.main``.
"""
from typing import Any, Dict, Iterable, Optional


class SigningError(Exception):
    status_code = 500
    default_message = "Signing workflow error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message}
        body.update(self.details)
        return body


# Validation

class InvalidPayload(SigningError):
    status_code = 400
    default_message = "Invalid signature payload"

    def __init__(self, errors: Iterable[str]):
        errors = list(errors)
        super().__init__(f"Invalid signature payload: {'; '.join(errors)}", errors=errors)


class InvalidEmail(SigningError):
    status_code = 400
    default_message = "Invalid email address"

    def __init__(self, invalid_emails: Iterable[str], message: Optional[str] = None):
        invalid_emails = list(invalid_emails)
        super().__init__(
            message or f"Invalid email(s): {', '.join(invalid_emails)}",
            invalid_emails=invalid_emails,
        )


class DuplicateSigner(SigningError):
    status_code = 400
    default_message = "Signer already added"

    def __init__(self, duplicates: Iterable[str]):
        duplicates = list(duplicates)
        super().__init__(
            f"Already signers on this document: {', '.join(duplicates)}",
            duplicates=duplicates,
        )


class InvalidReason(SigningError):
    status_code = 400
    default_message = "Rejection reason is required (min 3 characters)"


class InvalidDocument(SigningError):
    status_code = 400
    default_message = "Invalid PDF document"


# Authorization

class PermissionDenied(SigningError):
    status_code = 403
    default_message = "You do not have permission to modify this document"


# Not found

class TokenInvalid(SigningError):
    status_code = 404
    default_message = "Invalid or expired signing link"


class DocumentNotFound(SigningError):
    status_code = 404
    default_message = "Document not found"


class SignerNotFound(SigningError):
    status_code = 404
    default_message = "Signer not found"


# State conflicts

class AlreadyResponded(SigningError):
    status_code = 409

    def __init__(self, status):
        status = getattr(status, "value", status)
        super().__init__(f"Signer has already responded ({status})", status=status)


class DocumentFinalized(SigningError):
    status_code = 409

    def __init__(self, status):
        status = getattr(status, "value", status)
        super().__init__(f"Document is already {status}", status=status)


class TokenExpired(SigningError):
    status_code = 410
    default_message = "Signing link has expired"


# Collaborators

class CollaboratorUnavailable(SigningError):
    status_code = 502
    default_message = "An upstream service is unavailable"
