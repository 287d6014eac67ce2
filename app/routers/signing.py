import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from .. import models, schemas
from ..database import get_db
from ..dependencies import get_document_service, get_mailer, get_signing_service, get_token_service
from ..services.audit import RequestContext
from ..services.documents import DocumentService
from ..services.mailer import Mailer
from ..services.signing import RejectionPolicy, SignerRef, SigningResult, SigningService
from ..services.tokens import SigningTokenService

logger = logging.getLogger(__name__)

router = APIRouter()


def notify_owner_if_completed(result: SigningResult, db: Session, mailer: Mailer,
                              background_tasks: BackgroundTasks) -> None:
    """Queue the "document signed" mail once the last signer has signed."""
    if not result.completed:
        return
    owner = db.get(models.User, result.document.owner_id)
    if owner is None:
        logger.warning("Document %s has no owner to notify", result.document.id)
        return
    url = result.document.signed_url or result.document.original_url
    background_tasks.add_task(mailer.send_signed_document, owner.email, url)


@router.get("/{token}", response_model=schemas.SigningView)
def view_signing_request(token: str, tokens: SigningTokenService = Depends(get_token_service)):
    return tokens.describe(token)


@router.get("/{token}/download")
async def download_by_token(
    token: str,
    tokens: SigningTokenService = Depends(get_token_service),
    documents: DocumentService = Depends(get_document_service),
):
    signer = tokens.resolve(token)
    document = tokens.store.get_document(signer.document_id)
    content, filename = await documents.read_pdf(document)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/{token}/accept", response_model=schemas.AcceptResponse)
async def accept_by_token(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    payload: Any = Body(default=None),
    signing: SigningService = Depends(get_signing_service),
    mailer: Mailer = Depends(get_mailer),
    db: Session = Depends(get_db),
):
    signer = signing.tokens.resolve(token)
    result = await signing.accept_signing(
        SignerRef.for_token_holder(signer), payload, RequestContext.from_request(request)
    )
    notify_owner_if_completed(result, db, mailer, background_tasks)
    return {
        "message": "Document signed successfully",
        "signature": result.signature,
        "signer": result.signer,
        "document_status": result.document_status,
    }


@router.post("/{token}/reject", response_model=schemas.RejectResponse)
async def reject_by_token(
    token: str,
    request: Request,
    payload: Optional[schemas.RejectRequest] = None,
    signing: SigningService = Depends(get_signing_service),
):
    signer = signing.tokens.resolve(token)
    result = await signing.reject_signing(
        SignerRef.for_token_holder(signer),
        payload.reason if payload else None,
        RequestContext.from_request(request),
        policy=RejectionPolicy.TOKEN,
    )
    return {
        "message": "Document rejected",
        "signer": result.signer,
        "document_status": result.document_status,
    }
