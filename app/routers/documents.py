from typing import Any, List, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, File, Request, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from .. import models, schemas
from ..database import get_db
from ..dependencies import (
    get_current_user,
    get_document_service,
    get_mailer,
    get_signing_service,
    get_token_service,
)
from ..services.audit import RequestContext
from ..services.documents import DocumentService
from ..services.mailer import Mailer
from ..services.signing import RejectionPolicy, SignerRef, SigningService
from ..services.tokens import SigningTokenService
from .signing import notify_owner_if_completed

router = APIRouter()


def _detail(document, signers, tokens: SigningTokenService) -> schemas.DocumentDetail:
    return schemas.DocumentDetail(
        **schemas.Document.model_validate(document).model_dump(),
        signers=[schemas.owner_signer(s, tokens.signing_url(s.token)) for s in signers],
    )


@router.post("", response_model=schemas.Document, status_code=status.HTTP_201_CREATED)
async def upload_document(
    request: Request,
    file: UploadFile = File(...),
    current_user: models.User = Depends(get_current_user),
    documents: DocumentService = Depends(get_document_service),
):
    content = await file.read()
    return await documents.upload(
        owner_id=current_user.id,
        filename=file.filename,
        content=content,
        content_type=file.content_type,
        context=RequestContext.from_request(request),
    )


@router.get("/my", response_model=List[schemas.Document])
def list_my_documents(
    current_user: models.User = Depends(get_current_user),
    documents: DocumentService = Depends(get_document_service),
):
    return documents.list_for_owner(current_user.id)


@router.get("/{document_id}", response_model=schemas.DocumentDetail)
def get_document(
    document_id: str,
    current_user: models.User = Depends(get_current_user),
    documents: DocumentService = Depends(get_document_service),
    tokens: SigningTokenService = Depends(get_token_service),
):
    document = documents.get_for_owner(document_id, current_user.id)
    return _detail(document, documents.signers(document_id), tokens)


@router.get("/{document_id}/download")
async def download_document(
    document_id: str,
    current_user: models.User = Depends(get_current_user),
    documents: DocumentService = Depends(get_document_service),
):
    content, filename = await documents.open_pdf(document_id, current_user.id)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{document_id}/audit", response_model=List[schemas.AuditLog])
def get_audit_trail(
    document_id: str,
    current_user: models.User = Depends(get_current_user),
    documents: DocumentService = Depends(get_document_service),
):
    return documents.audit_trail(document_id, current_user.id)


@router.post("/{document_id}/signed-pdf", response_model=schemas.Document)
async def regenerate_signed_pdf(
    document_id: str,
    request: Request,
    current_user: models.User = Depends(get_current_user),
    signing: SigningService = Depends(get_signing_service),
):
    return await signing.regenerate_signed_pdf(
        document_id, current_user.id, RequestContext.from_request(request)
    )


@router.post("/{document_id}/signers", response_model=List[schemas.OwnerSigner])
def add_signers(
    document_id: str,
    payload: schemas.SignersCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: models.User = Depends(get_current_user),
    signing: SigningService = Depends(get_signing_service),
    mailer: Mailer = Depends(get_mailer),
):
    signers = signing.add_signers(
        document_id, payload.emails, current_user.id, RequestContext.from_request(request)
    )

    response = []
    for signer in signers:
        signing_url = signing.tokens.signing_url(signer.token)
        background_tasks.add_task(mailer.send_signing_invitation, signer.email, signing_url)
        response.append(schemas.owner_signer(signer, signing_url))
    return response


def _owner_ref(document_id: str, signer_id: str, owner: models.User) -> SignerRef:
    return SignerRef(signer_id=signer_id, document_id=document_id, owner_id=owner.id)


@router.api_route("/{document_id}/signers/{signer_id}/accept", methods=["POST", "PATCH"],
                  response_model=schemas.AcceptResponse)
async def owner_accept_signer(
    document_id: str,
    signer_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    payload: Any = Body(default=None),
    current_user: models.User = Depends(get_current_user),
    signing: SigningService = Depends(get_signing_service),
    mailer: Mailer = Depends(get_mailer),
    db: Session = Depends(get_db),
):
    result = await signing.accept_signing(
        _owner_ref(document_id, signer_id, current_user), payload, RequestContext.from_request(request)
    )
    notify_owner_if_completed(result, db, mailer, background_tasks)
    return {
        "message": "Signer accepted successfully",
        "signature": result.signature,
        "signer": result.signer,
        "document_status": result.document_status,
    }


@router.api_route("/{document_id}/signers/{signer_id}/reject", methods=["POST", "PATCH"],
                  response_model=schemas.RejectResponse)
async def owner_reject_signer(
    document_id: str,
    signer_id: str,
    request: Request,
    payload: Optional[schemas.RejectRequest] = None,
    current_user: models.User = Depends(get_current_user),
    signing: SigningService = Depends(get_signing_service),
):
    result = await signing.reject_signing(
        _owner_ref(document_id, signer_id, current_user),
        payload.reason if payload else None,
        RequestContext.from_request(request),
        policy=RejectionPolicy.OWNER,
    )
    return {
        "message": "Signer rejected successfully",
        "signer": result.signer,
        "document_status": result.document_status,
    }
