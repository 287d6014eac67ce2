from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from . import models
from .config import Settings, get_settings
from .database import get_db
from .services.audit import AuditTrail
from .services.auth import decode_access_token
from .services.documents import DocumentService
from .services.mailer import Mailer
from .services.signing import SigningService
from .services.storage import build_storage
from .services.tokens import SigningTokenService
from .store import DocumentStore, SqlDocumentStore

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def get_store(db: Session = Depends(get_db)) -> DocumentStore:
    return SqlDocumentStore(db)


def get_storage(settings: Settings = Depends(get_settings)):
    return build_storage(settings)


def get_mailer(settings: Settings = Depends(get_settings)) -> Mailer:
    return Mailer(settings)


def get_audit_trail(store: DocumentStore = Depends(get_store)) -> AuditTrail:
    return AuditTrail(store)


def get_token_service(store: DocumentStore = Depends(get_store),
                      settings: Settings = Depends(get_settings)) -> SigningTokenService:
    return SigningTokenService(store, settings.public_base_url, settings.signing_token_ttl_hours)


def get_signing_service(store: DocumentStore = Depends(get_store),
                        tokens: SigningTokenService = Depends(get_token_service),
                        audit: AuditTrail = Depends(get_audit_trail),
                        storage=Depends(get_storage),
                        settings: Settings = Depends(get_settings)) -> SigningService:
    return SigningService(store, tokens, audit, storage=storage, embed_mode=settings.pdf_embed_mode)


def get_document_service(store: DocumentStore = Depends(get_store),
                         storage=Depends(get_storage),
                         audit: AuditTrail = Depends(get_audit_trail),
                         settings: Settings = Depends(get_settings)) -> DocumentService:
    return DocumentService(store, storage, audit, max_file_size=settings.max_upload_bytes)


def get_current_user(token: str = Depends(oauth2_scheme),
                     db: Session = Depends(get_db),
                     settings: Settings = Depends(get_settings)) -> models.User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    user_id = decode_access_token(token, settings.secret_key)
    if user_id is None:
        raise credentials_exception
    user = db.get(models.User, user_id)
    if user is None:
        raise credentials_exception
    return user
