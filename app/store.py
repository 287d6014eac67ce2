"""Persistence adapter for documents, signers, signatures and audit entries.

Services never touch a SQLAlchemy session directly: they receive a
``DocumentStore`` and do every read-modify-write on a document inside
``store.transaction(document_id)``. The SQL implementation locks the
document row for the duration of the block (on SQLite by writing to it first,
since FOR UPDATE is not supported there) and reports unique-constraint
violations as ``ConflictError``; the in-memory implementation
(used by the service tests) serialises on a per-document lock and rolls
back by restoring a snapshot.
"""
import abc
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models


class ConflictError(Exception):
    """A write broke a uniqueness rule (token, signer email, one signature per signer)."""


class DocumentStore(abc.ABC):

    @abc.abstractmethod
    def transaction(self, document_id: Optional[str] = None):
        """Context manager: commit on success, roll back on any exception.

        With a ``document_id`` the document is locked for the whole block so
        that status checks, signer writes and status recomputation see one
        consistent signer set.
        """

    # Documents
    @abc.abstractmethod
    def add_document(self, document: models.Document) -> models.Document: ...

    @abc.abstractmethod
    def get_document(self, document_id: str) -> Optional[models.Document]: ...

    @abc.abstractmethod
    def list_documents_by_owner(self, owner_id: str) -> List[models.Document]: ...

    @abc.abstractmethod
    def save_document(self, document: models.Document) -> models.Document: ...

    # Signers
    @abc.abstractmethod
    def add_signer(self, signer: models.Signer) -> models.Signer: ...

    @abc.abstractmethod
    def get_signer(self, signer_id: str) -> Optional[models.Signer]: ...

    @abc.abstractmethod
    def get_signer_by_token(self, token: str) -> Optional[models.Signer]: ...

    @abc.abstractmethod
    def list_signers(self, document_id: str) -> List[models.Signer]: ...

    @abc.abstractmethod
    def save_signer(self, signer: models.Signer) -> models.Signer: ...

    # Signatures
    @abc.abstractmethod
    def add_signature(self, signature: models.Signature) -> models.Signature: ...

    @abc.abstractmethod
    def get_signature_by_signer(self, signer_id: str) -> Optional[models.Signature]: ...

    @abc.abstractmethod
    def list_signatures(self, document_id: str) -> List[models.Signature]: ...

    # Audit
    @abc.abstractmethod
    def add_audit_log(self, entry: models.AuditLog) -> models.AuditLog: ...

    @abc.abstractmethod
    def list_audit_logs(self, document_id: str) -> List[models.AuditLog]: ...


class SqlDocumentStore(DocumentStore):

    def __init__(self, db: Session):
        self.db = db

    def _lock_document(self, document_id: str) -> None:
        if self.db.get_bind().dialect.name == "sqlite":
            # SQLite drops FOR UPDATE and only takes its write lock on the first
            # write, so claim it before anything is read.
            self.db.execute(
                update(models.Document)
                .where(models.Document.id == document_id)
                .values(updated_at=models.Document.updated_at)
                .execution_options(synchronize_session=False)
            )
        (
            self.db.query(models.Document)
            .filter(models.Document.id == document_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @contextmanager
    def transaction(self, document_id: Optional[str] = None) -> Iterator["SqlDocumentStore"]:
        try:
            if document_id is not None:
                self._lock_document(document_id)
            yield self
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(str(e.orig)) from e
        except Exception:
            self.db.rollback()
            raise

    def _write(self, obj):
        self.db.add(obj)
        self.db.flush()
        return obj

    def add_document(self, document):
        return self._write(document)

    def get_document(self, document_id):
        return (
            self.db.query(models.Document)
            .filter(models.Document.id == document_id)
            .populate_existing()
            .first()
        )

    def list_documents_by_owner(self, owner_id):
        return (
            self.db.query(models.Document)
            .filter(models.Document.owner_id == owner_id)
            .order_by(models.Document.created_at.desc())
            .all()
        )

    def save_document(self, document):
        return self._write(document)

    def add_signer(self, signer):
        return self._write(signer)

    def get_signer(self, signer_id):
        return (
            self.db.query(models.Signer)
            .filter(models.Signer.id == signer_id)
            .populate_existing()
            .first()
        )

    def get_signer_by_token(self, token):
        return (
            self.db.query(models.Signer)
            .filter(models.Signer.token == token)
            .populate_existing()
            .first()
        )

    def list_signers(self, document_id):
        return (
            self.db.query(models.Signer)
            .filter(models.Signer.document_id == document_id)
            .order_by(models.Signer.created_at)
            .populate_existing()
            .all()
        )

    def save_signer(self, signer):
        return self._write(signer)

    def add_signature(self, signature):
        return self._write(signature)

    def get_signature_by_signer(self, signer_id):
        return self.db.query(models.Signature).filter(models.Signature.signer_id == signer_id).first()

    def list_signatures(self, document_id):
        return (
            self.db.query(models.Signature)
            .filter(models.Signature.document_id == document_id)
            .order_by(models.Signature.created_at)
            .all()
        )

    def add_audit_log(self, entry):
        return self._write(entry)

    def list_audit_logs(self, document_id):
        return (
            self.db.query(models.AuditLog)
            .filter(models.AuditLog.document_id == document_id)
            .order_by(models.AuditLog.created_at)
            .all()
        )


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store with the same transactional guarantees as the SQL one."""

    def __init__(self):
        self.documents: Dict[str, models.Document] = {}
        self.signers: Dict[str, models.Signer] = {}
        self.signatures: Dict[str, models.Signature] = {}
        self.audit_logs: List[models.AuditLog] = []
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._global_lock = threading.RLock()

    def _lock_for(self, document_id):
        if document_id is None:
            return self._global_lock
        with self._locks_guard:
            return self._locks.setdefault(document_id, threading.RLock())

    @staticmethod
    def _in_scope(obj, document_id):
        return document_id is None or obj.document_id == document_id

    def _snapshot(self, document_id):
        documents = {
            k: (d.status, d.signed_url, d.updated_at)
            for k, d in list(self.documents.items())
            if document_id is None or k == document_id
        }
        signers = {
            k: (s.status, s.signed_at, s.rejection_reason)
            for k, s in list(self.signers.items())
            if self._in_scope(s, document_id)
        }
        return {
            "documents": documents,
            "document_ids": set(self.documents),
            "signers": signers,
            "signature_ids": set(self.signatures),
            "audit_ids": {e.id for e in self.audit_logs},
        }

    def _restore(self, document_id, snapshot):
        for key, values in snapshot["documents"].items():
            doc = self.documents.get(key)
            if doc is not None:
                doc.status, doc.signed_url, doc.updated_at = values
        if document_id is None:
            for key in set(self.documents) - snapshot["document_ids"]:
                del self.documents[key]
        for key, signer in list(self.signers.items()):
            if not self._in_scope(signer, document_id):
                continue
            if key in snapshot["signers"]:
                signer.status, signer.signed_at, signer.rejection_reason = snapshot["signers"][key]
            else:
                del self.signers[key]
        for key, signature in list(self.signatures.items()):
            if key not in snapshot["signature_ids"] and self._in_scope(signature, document_id):
                del self.signatures[key]
        self.audit_logs[:] = [
            e for e in self.audit_logs
            if e.id in snapshot["audit_ids"] or not self._in_scope(e, document_id)
        ]

    @contextmanager
    def transaction(self, document_id=None):
        with self._lock_for(document_id):
            snapshot = self._snapshot(document_id)
            try:
                yield self
            except Exception:
                self._restore(document_id, snapshot)
                raise

    @staticmethod
    def _stamp(obj):
        if obj.id is None:
            obj.id = models.new_id()
        if getattr(obj, "created_at", None) is None:
            obj.created_at = models.utcnow()
        return obj

    def add_document(self, document):
        self._stamp(document)
        if document.status is None:
            document.status = models.DocumentStatus.PENDING
        document.updated_at = document.created_at
        self.documents[document.id] = document
        return document

    def get_document(self, document_id):
        return self.documents.get(document_id)

    def list_documents_by_owner(self, owner_id):
        docs = [d for d in self.documents.values() if d.owner_id == owner_id]
        return sorted(docs, key=lambda d: d.created_at, reverse=True)

    def save_document(self, document):
        document.updated_at = models.utcnow()
        self.documents[document.id] = document
        return document

    def add_signer(self, signer):
        self._stamp(signer)
        if signer.status is None:
            signer.status = models.SignerStatus.PENDING
        for existing in self.signers.values():
            if existing.token == signer.token:
                raise ConflictError("signer token must be unique")
            if existing.document_id == signer.document_id and existing.email == signer.email:
                raise ConflictError("signer email must be unique per document")
        self.signers[signer.id] = signer
        return signer

    def get_signer(self, signer_id):
        return self.signers.get(signer_id)

    def get_signer_by_token(self, token):
        for signer in self.signers.values():
            if signer.token == token:
                return signer
        return None

    def list_signers(self, document_id):
        signers = [s for s in self.signers.values() if s.document_id == document_id]
        return sorted(signers, key=lambda s: s.created_at)

    def save_signer(self, signer):
        self.signers[signer.id] = signer
        return signer

    def add_signature(self, signature):
        self._stamp(signature)
        if self.get_signature_by_signer(signature.signer_id) is not None:
            raise ConflictError("signer already has a signature")
        self.signatures[signature.id] = signature
        return signature

    def get_signature_by_signer(self, signer_id):
        for signature in self.signatures.values():
            if signature.signer_id == signer_id:
                return signature
        return None

    def list_signatures(self, document_id):
        signatures = [s for s in self.signatures.values() if s.document_id == document_id]
        return sorted(signatures, key=lambda s: s.created_at)

    def add_audit_log(self, entry):
        self._stamp(entry)
        self.audit_logs.append(entry)
        return entry

    def list_audit_logs(self, document_id):
        return [e for e in self.audit_logs if e.document_id == document_id]
