import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from .database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PARTIALLY_SIGNED = "PARTIALLY_SIGNED"
    SIGNED = "SIGNED"
    REJECTED = "REJECTED"


class SignerStatus(str, enum.Enum):
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    REJECTED = "REJECTED"


class SignatureType(str, enum.Enum):
    TYPED = "TYPED"
    DRAWN = "DRAWN"
    IMAGE = "IMAGE"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    documents = relationship("Document", back_populates="owner")


class Document(Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    filename = Column(String, nullable=False)
    original_url = Column(String, nullable=False)
    signed_url = Column(String, nullable=True)
    page_count = Column(Integer, nullable=True)
    status = Column(Enum(DocumentStatus, name="document_status"), nullable=False, default=DocumentStatus.PENDING)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="documents")
    signers = relationship("Signer", back_populates="document", order_by="Signer.created_at")
    signatures = relationship("Signature", back_populates="document")
    audit_logs = relationship("AuditLog", back_populates="document")


class Signer(Base):
    __tablename__ = "signers"
    __table_args__ = (UniqueConstraint("document_id", "email", name="uq_signer_document_email"),)

    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(String(36), ForeignKey("documents.id"), index=True, nullable=False)
    email = Column(String, nullable=False)
    token = Column(String, unique=True, index=True, nullable=False)
    status = Column(Enum(SignerStatus, name="signer_status"), nullable=False, default=SignerStatus.PENDING)
    signed_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    document = relationship("Document", back_populates="signers")
    signature = relationship("Signature", back_populates="signer", uselist=False)


class Signature(Base):
    __tablename__ = "signatures"

    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(String(36), ForeignKey("documents.id"), index=True, nullable=False)
    signer_id = Column(String(36), ForeignKey("signers.id"), unique=True, nullable=False)
    type = Column(Enum(SignatureType, name="signature_type"), nullable=False)
    value = Column(Text, nullable=False)
    x = Column(Float, nullable=False)
    y = Column(Float, nullable=False)
    page = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    document = relationship("Document", back_populates="signatures")
    signer = relationship("Signer", back_populates="signature")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    document_id = Column(String(36), ForeignKey("documents.id"), index=True, nullable=False)
    action = Column(String, nullable=False)
    ip_address = Column(String)
    user_agent = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    document = relationship("Document", back_populates="audit_logs")
