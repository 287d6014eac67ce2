import logging
import os
import uuid
from typing import List, Optional, Tuple

from .. import models
from ..exceptions import DocumentNotFound, InvalidDocument, PermissionDenied
from ..store import DocumentStore
from . import pdf_service
from .audit import AuditTrail, RequestContext
from .storage import UPLOADS

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB


class DocumentService:
    """Upload and owner-scoped access to documents."""

    def __init__(self, store: DocumentStore, storage, audit: AuditTrail, max_file_size: int = MAX_FILE_SIZE):
        self.store = store
        self.storage = storage
        self.audit = audit
        self.max_file_size = max_file_size

    def validate_pdf(self, content: bytes, filename: str, content_type: str) -> int:
        """Checks the upload and returns its page count."""
        if not content:
            raise InvalidDocument("Uploaded file is empty")
        if content_type != PDF_CONTENT_TYPE:
            raise InvalidDocument(f"Only PDF files are allowed, received {content_type}")
        if not filename or not filename.lower().endswith(".pdf"):
            raise InvalidDocument("File extension must be .pdf")
        if len(content) > self.max_file_size:
            raise InvalidDocument(f"Maximum file size is {self.max_file_size // (1024 * 1024)} MB")

        try:
            page_count = pdf_service.read_page_count(content)
        except Exception:
            raise InvalidDocument("Invalid or damaged PDF")
        if page_count < 1:
            raise InvalidDocument("PDF has no pages")
        return page_count

    async def upload(self, owner_id: str, filename: str, content: bytes, content_type: str,
                     context: Optional[RequestContext] = None) -> models.Document:
        filename = os.path.basename(filename or "")
        page_count = self.validate_pdf(content, filename, content_type)

        # Storage failures surface as CollaboratorUnavailable, nothing is persisted
        unique_filename = f"{uuid.uuid4()}_{filename}"
        original_url = await self.storage.upload_file(content, unique_filename, UPLOADS)

        with self.store.transaction():
            document = self.store.add_document(
                models.Document(
                    owner_id=owner_id,
                    filename=filename,
                    original_url=original_url,
                    page_count=page_count,
                    status=models.DocumentStatus.PENDING,
                )
            )

        logger.info("Document %s uploaded by %s (%d pages)", document.id, owner_id, page_count)
        self.audit.record(document.id, "DOCUMENT_UPLOADED", context)
        return document

    def list_for_owner(self, owner_id: str) -> List[models.Document]:
        return self.store.list_documents_by_owner(owner_id)

    def get_for_owner(self, document_id: str, owner_id: str) -> models.Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFound()
        if document.owner_id != owner_id:
            raise PermissionDenied("Access denied")
        return document

    def signers(self, document_id: str) -> List[models.Signer]:
        return self.store.list_signers(document_id)

    async def open_pdf(self, document_id: str, owner_id: str) -> Tuple[bytes, str]:
        return await self.read_pdf(self.get_for_owner(document_id, owner_id))

    async def read_pdf(self, document) -> Tuple[bytes, str]:
        """Signed version when one exists, else the original."""
        if document.signed_url:
            return await self.storage.download_file(document.signed_url), f"signed_{document.filename}"
        return await self.storage.download_file(document.original_url), document.filename

    def audit_trail(self, document_id: str, owner_id: str) -> List[models.AuditLog]:
        self.get_for_owner(document_id, owner_id)
        return self.audit.history(document_id)
