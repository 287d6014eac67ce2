"""Signer responses: accept with a placed signature, reject, and invite.

Every signer mutation runs inside ``store.transaction(document_id)``: the
pending check, the signer write, the status recomputation over the fresh
signer list and the document write commit or roll back together. Storage,
PDF stamping and audit entries happen after the commit, outside the lock.
"""
import enum
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from fastapi.concurrency import run_in_threadpool

from .. import models
from ..exceptions import (
    AlreadyResponded,
    CollaboratorUnavailable,
    DocumentFinalized,
    DocumentNotFound,
    DuplicateSigner,
    InvalidDocument,
    InvalidEmail,
    InvalidPayload,
    InvalidReason,
    PermissionDenied,
    SignerNotFound,
    SigningError,
)
from ..models import DocumentStatus, SignatureType, SignerStatus
from ..store import ConflictError, DocumentStore
from . import pdf_service
from .audit import AuditTrail, RequestContext
from .status import ensure_document_open, recompute_document_status
from .storage import SIGNED_DOCS
from .tokens import SigningTokenService

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MIN_OWNER_REASON_LENGTH = 3
DEFAULT_REJECTION_REASON = "No reason provided"


class RejectionPolicy(str, enum.Enum):
    # Signers rejecting through their link may leave the reason empty,
    # owners overriding a signer must explain themselves.
    TOKEN = "token"
    OWNER = "owner"


@dataclass(frozen=True)
class SignerRef:
    signer_id: str
    document_id: str
    owner_id: Optional[str] = None

    @classmethod
    def for_token_holder(cls, signer) -> "SignerRef":
        return cls(signer_id=signer.id, document_id=signer.document_id)

    @property
    def by_owner(self) -> bool:
        return self.owner_id is not None


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class SignaturePayload:
    type: SignatureType
    image_data: str
    x: float
    y: float
    page: int

    @classmethod
    def parse(cls, raw: Optional[Mapping[str, Any]]) -> "SignaturePayload":
        """Validate a raw request body, reporting every problem at once."""
        if not isinstance(raw, Mapping):
            raise InvalidPayload(["body must be a JSON object"])

        errors = []

        sig_type = raw.get("type")
        try:
            sig_type = SignatureType(sig_type)
        except ValueError:
            errors.append(f"type must be one of {', '.join(t.value for t in SignatureType)}")

        image_data = raw.get("imageData", raw.get("signatureImage"))
        if not isinstance(image_data, str) or not image_data.strip():
            errors.append("imageData must be a non-empty string")

        coords = {}
        for name in ("x", "y"):
            value = raw.get(name)
            if not _is_number(value) or not math.isfinite(value):
                errors.append(f"{name} must be a number")
            elif value < 0:
                errors.append(f"{name} must be >= 0")
            else:
                coords[name] = float(value)

        page = raw.get("page")
        if isinstance(page, float) and page.is_integer():
            page = int(page)
        if not isinstance(page, int) or isinstance(page, bool):
            errors.append("page must be an integer")
        elif page < 1:
            errors.append("page must be >= 1")

        if errors:
            raise InvalidPayload(errors)

        return cls(type=sig_type, image_data=image_data, x=coords["x"], y=coords["y"], page=page)


@dataclass
class SigningResult:
    document: models.Document
    signer: models.Signer
    document_status: DocumentStatus
    signature: Optional[models.Signature] = None

    @property
    def completed(self) -> bool:
        return self.document_status == DocumentStatus.SIGNED


def normalize_emails(emails) -> List[str]:
    if not isinstance(emails, list) or not emails:
        raise InvalidEmail([], "Please provide a non-empty list of emails")

    invalid = [
        e if isinstance(e, str) else repr(e)
        for e in emails
        if not isinstance(e, str) or not EMAIL_PATTERN.match(e.strip())
    ]
    if invalid:
        raise InvalidEmail(invalid)
    return [e.strip().lower() for e in emails]


def check_reason(reason, policy: RejectionPolicy) -> str:
    if reason is not None and not isinstance(reason, str):
        raise InvalidReason("Rejection reason must be a string")
    reason = (reason or "").strip()

    if policy == RejectionPolicy.OWNER:
        if len(reason) < MIN_OWNER_REASON_LENGTH:
            raise InvalidReason()
        return reason
    return reason or DEFAULT_REJECTION_REASON


class SigningService:

    def __init__(self, store: DocumentStore, tokens: SigningTokenService, audit: AuditTrail,
                 storage=None, embed_mode: str = "off"):
        self.store = store
        self.tokens = tokens
        self.audit = audit
        self.storage = storage
        self.embed_mode = embed_mode if storage is not None else "off"

    # Loading under the document lock

    def _load_for_update(self, ref: SignerRef):
        document = self.store.get_document(ref.document_id)
        if document is None:
            raise DocumentNotFound()
        if ref.by_owner and document.owner_id != ref.owner_id:
            raise PermissionDenied()

        signer = self.store.get_signer(ref.signer_id)
        if signer is None or signer.document_id != document.id:
            raise SignerNotFound()

        # Signer state first: a repeated response is AlreadyResponded even on a finished document
        self.tokens.ensure_pending(signer)
        ensure_document_open(document)
        return document, signer

    def _apply_status(self, document) -> DocumentStatus:
        statuses = [s.status for s in self.store.list_signers(document.id)]
        document.status = recompute_document_status(statuses)
        self.store.save_document(document)
        return document.status

    @staticmethod
    def _actor(ref: SignerRef) -> str:
        return " by owner" if ref.by_owner else ""

    # Responses

    def _record_acceptance(self, ref: SignerRef, payload: SignaturePayload):
        with self.store.transaction(ref.document_id):
            document, signer = self._load_for_update(ref)
            if document.page_count and payload.page > document.page_count:
                raise InvalidPayload([f"page must be <= {document.page_count}"])

            signature = self.store.add_signature(
                models.Signature(
                    document_id=document.id,
                    signer_id=signer.id,
                    type=payload.type,
                    value=payload.image_data,
                    x=payload.x,
                    y=payload.y,
                    page=payload.page,
                )
            )
            signer.status = SignerStatus.SIGNED
            signer.signed_at = models.utcnow()
            self.store.save_signer(signer)
            status = self._apply_status(document)
        return document, signer, signature, status

    async def accept_signing(self, ref: SignerRef, raw_payload, context: Optional[RequestContext] = None) -> SigningResult:
        payload = SignaturePayload.parse(raw_payload)

        try:
            document, signer, signature, status = self._record_acceptance(ref, payload)
        except ConflictError:
            # Another response for this signer committed first
            signer = self.store.get_signer(ref.signer_id)
            raise AlreadyResponded(signer.status if signer is not None else SignerStatus.SIGNED)

        logger.info("Signer %s signed document %s, status now %s", signer.id, document.id, status.value)
        self.audit.record(document.id, f"SIGNER_SIGNED ({signer.email}){self._actor(ref)}", context)
        if status == DocumentStatus.SIGNED:
            self.audit.record(document.id, "DOCUMENT_COMPLETED", RequestContext.system())

        if self.embed_mode == "each" or (self.embed_mode == "final" and status == DocumentStatus.SIGNED):
            await self._embed_quietly(document.id)

        return SigningResult(document=document, signer=signer, document_status=status, signature=signature)

    async def reject_signing(self, ref: SignerRef, reason, context: Optional[RequestContext] = None,
                             policy: RejectionPolicy = RejectionPolicy.TOKEN) -> SigningResult:
        reason = check_reason(reason, policy)

        with self.store.transaction(ref.document_id):
            document, signer = self._load_for_update(ref)
            signer.status = SignerStatus.REJECTED
            signer.rejection_reason = reason
            self.store.save_signer(signer)
            status = self._apply_status(document)

        logger.info("Signer %s rejected document %s", signer.id, document.id)
        self.audit.record(document.id, f"SIGNER_REJECTED ({signer.email}){self._actor(ref)}", context)
        return SigningResult(document=document, signer=signer, document_status=status)

    def _duplicates(self, document_id: str, emails, normalized: List[str]) -> List[str]:
        seen = {s.email.lower() for s in self.store.list_signers(document_id)}
        duplicates = []
        for raw, email in zip(emails, normalized):
            if email in seen:
                duplicates.append(raw.strip())
            seen.add(email)
        return duplicates

    def add_signers(self, document_id: str, emails, requester_id: str,
                    context: Optional[RequestContext] = None) -> List[models.Signer]:
        try:
            created, normalized = self._create_signers(document_id, emails, requester_id)
        except ConflictError:
            # A concurrent request added one of these e-mails first
            duplicates = self._duplicates(document_id, emails, normalize_emails(emails))
            if duplicates:
                raise DuplicateSigner(duplicates)
            raise

        logger.info("Added %d signer(s) to document %s", len(created), document_id)
        self.audit.record(document_id, f"SIGNERS_ADDED ({', '.join(normalized)})", context)
        return created

    def _create_signers(self, document_id: str, emails, requester_id: str):
        with self.store.transaction(document_id):
            document = self.store.get_document(document_id)
            if document is None:
                raise DocumentNotFound()
            if document.owner_id != requester_id:
                raise PermissionDenied("You do not have permission to add signers to this document")

            normalized = normalize_emails(emails)
            ensure_document_open(document)

            duplicates = self._duplicates(document.id, emails, normalized)
            if duplicates:
                raise DuplicateSigner(duplicates)

            created = [
                self.store.add_signer(
                    models.Signer(
                        document_id=document.id,
                        email=email,
                        token=self.tokens.issue(),
                        status=SignerStatus.PENDING,
                    )
                )
                for email in normalized
            ]
            self._apply_status(document)
        return created, normalized

    # Signed PDF

    async def compose_signed_pdf(self, document_id: str) -> str:
        """Stamp every stored signature onto the original PDF and store the result."""
        if self.storage is None:
            raise CollaboratorUnavailable("No file storage configured for signed PDFs")

        document = self.store.get_document(document_id)
        signers = {s.id: s for s in self.store.list_signers(document_id)}
        signatures = self.store.list_signatures(document_id)

        stamps = []
        for signature in signatures:
            signer = signers.get(signature.signer_id)
            signed_at = signer.signed_at if signer is not None else signature.created_at
            stamps.append({
                "page_number": signature.page,
                "x": signature.x,
                "y": signature.y,
                "image_data": signature.value,
                "text": signer.email if signer is not None else "",
                "signed_at": signed_at.strftime("%Y-%m-%d %H:%M") if signed_at else "",
            })

        try:
            original = await self.storage.download_file(document.original_url)
            signed_pdf = await run_in_threadpool(pdf_service.sign_pdf_bytes, original, stamps)
            signed_url = await self.storage.upload_file(signed_pdf, f"signed_{document.id}.pdf", SIGNED_DOCS)
        except SigningError:
            raise
        except Exception as e:
            logger.exception("Error burning signatures into document %s", document_id)
            raise CollaboratorUnavailable("Could not generate the signed PDF") from e

        with self.store.transaction(document_id):
            document = self.store.get_document(document_id)
            # A newer composition that includes more signatures is on its way
            if len(self.store.list_signatures(document_id)) == len(stamps):
                document.signed_url = signed_url
                self.store.save_document(document)

        return signed_url

    async def _embed_quietly(self, document_id: str) -> Optional[str]:
        try:
            signed_url = await self.compose_signed_pdf(document_id)
        except Exception:
            logger.exception("Signed PDF generation failed for document %s", document_id)
            self.audit.record(document_id, "SIGNED_PDF_FAILED", RequestContext.system())
            return None
        self.audit.record(document_id, "SIGNED_PDF_GENERATED", RequestContext.system())
        return signed_url

    async def regenerate_signed_pdf(self, document_id: str, owner_id: str,
                                    context: Optional[RequestContext] = None) -> models.Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFound()
        if document.owner_id != owner_id:
            raise PermissionDenied()
        if document.status == DocumentStatus.REJECTED:
            raise DocumentFinalized(document.status)
        if not self.store.list_signatures(document_id):
            raise InvalidDocument("Document has no signatures to embed yet")

        await self.compose_signed_pdf(document_id)
        self.audit.record(document_id, "SIGNED_PDF_GENERATED", context)
        return self.store.get_document(document_id)
