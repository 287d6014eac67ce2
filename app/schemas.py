from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import DocumentStatus, SignatureType, SignerStatus


class UserCreate(BaseModel):
    email: str
    password: str = Field(min_length=6)


class User(BaseModel):
    id: str
    email: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Token(BaseModel):
    access_token: str
    token_type: str


class SignersCreate(BaseModel):
    emails: Optional[Any] = None


class RejectRequest(BaseModel):
    reason: Optional[Any] = None


class Signer(BaseModel):
    id: str
    document_id: str
    email: str
    status: SignerStatus
    signed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OwnerSigner(Signer):
    """Signer as seen by the document owner, with the link to hand out."""
    token: str
    signing_url: Optional[str] = None


class Signature(BaseModel):
    id: str
    document_id: str
    signer_id: str
    type: SignatureType
    x: float
    y: float
    page: int
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Document(BaseModel):
    id: str
    owner_id: str
    filename: str
    original_url: str
    signed_url: Optional[str] = None
    page_count: Optional[int] = None
    status: DocumentStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class DocumentDetail(Document):
    signers: List[OwnerSigner] = []


class AuditLog(BaseModel):
    id: str
    document_id: str
    action: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AcceptResponse(BaseModel):
    message: str
    signature: Signature
    signer: Signer
    document_status: DocumentStatus


class RejectResponse(BaseModel):
    message: str
    signer: Signer
    document_status: DocumentStatus


class SigningView(BaseModel):
    signer_id: str
    email: str
    status: SignerStatus
    document_id: str
    filename: str
    document_status: DocumentStatus
    pdf_url: str


def owner_signer(signer, signing_url: str) -> OwnerSigner:
    return OwnerSigner(
        **Signer.model_validate(signer).model_dump(),
        token=signer.token,
        signing_url=signing_url,
    )
