import logging
from dataclasses import dataclass
from typing import Optional

from .. import models
from ..store import DocumentStore

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


@dataclass(frozen=True)
class RequestContext:
    ip_address: str = UNKNOWN
    user_agent: str = UNKNOWN

    @classmethod
    def from_request(cls, request) -> "RequestContext":
        client = getattr(request, "client", None)
        return cls(
            ip_address=(client.host if client and client.host else UNKNOWN),
            user_agent=request.headers.get("user-agent") or UNKNOWN,
        )

    @classmethod
    def system(cls) -> "RequestContext":
        return cls(ip_address="system", user_agent="system")


class AuditTrail:
    """Append-only audit log. Recording never raises."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def record(self, document_id: str, action: str,
               context: Optional[RequestContext] = None) -> Optional[models.AuditLog]:
        context = context or RequestContext()
        try:
            with self.store.transaction():
                entry = self.store.add_audit_log(
                    models.AuditLog(
                        document_id=document_id,
                        action=action,
                        ip_address=context.ip_address,
                        user_agent=context.user_agent,
                    )
                )
            logger.debug("Audit %s on document %s", action, document_id)
            return entry
        except Exception:
            # Audit must never break the main flow
            logger.exception("Failed to write audit entry %r for document %s", action, document_id)
            return None

    def history(self, document_id: str):
        return self.store.list_audit_logs(document_id)
