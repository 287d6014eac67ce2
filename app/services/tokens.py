import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..exceptions import AlreadyResponded, TokenExpired, TokenInvalid
from ..models import SignerStatus
from ..store import DocumentStore

logger = logging.getLogger(__name__)

# 32 random bytes == 256 bits, ~43 URL-safe characters
TOKEN_BYTES = 32


def issue_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SigningTokenService:
    """Resolves the capability tokens that anonymous signers act with."""

    def __init__(self, store: DocumentStore, public_base_url: str = "http://localhost:8000",
                 ttl_hours: Optional[float] = None):
        self.store = store
        self.public_base_url = public_base_url.rstrip("/")
        self.ttl = timedelta(hours=ttl_hours) if ttl_hours else None

    issue = staticmethod(issue_token)

    def signing_url(self, token: str) -> str:
        return f"{self.public_base_url}/sign/{token}"

    def resolve(self, token: str):
        if not token or not token.strip():
            raise TokenInvalid()

        signer = self.store.get_signer_by_token(token)
        if signer is None:
            logger.info("Rejected unknown signing token")
            raise TokenInvalid()

        if self.ttl is not None and signer.created_at is not None:
            if datetime.now(timezone.utc) - _as_utc(signer.created_at) > self.ttl:
                logger.info("Signing token for signer %s expired", signer.id)
                raise TokenExpired()

        return signer

    @staticmethod
    def ensure_pending(signer) -> None:
        if SignerStatus(signer.status) != SignerStatus.PENDING:
            raise AlreadyResponded(signer.status)

    def describe(self, token: str) -> dict:
        """Public view of a signing request: only the token holder's own data."""
        signer = self.resolve(token)
        document = self.store.get_document(signer.document_id)
        return {
            "signer_id": signer.id,
            "email": signer.email,
            "status": signer.status,
            "document_id": signer.document_id,
            "filename": document.filename,
            "document_status": document.status,
            "pdf_url": document.original_url,
        }
