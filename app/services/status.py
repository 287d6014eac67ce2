from typing import Iterable

from ..exceptions import DocumentFinalized
from ..models import DocumentStatus, SignerStatus

TERMINAL_DOCUMENT_STATUSES = frozenset({DocumentStatus.SIGNED, DocumentStatus.REJECTED})


def recompute_document_status(signer_statuses: Iterable[SignerStatus]) -> DocumentStatus:
    """Derive a document's status from the statuses of all of its signers.

    A single rejection wins over everything else. Otherwise the document is
    SIGNED once every signer has signed, PARTIALLY_SIGNED while only some
    have, and PENDING when there are no signers or nobody has signed yet.
    """
    statuses = [SignerStatus(s) for s in signer_statuses]

    if SignerStatus.REJECTED in statuses:
        return DocumentStatus.REJECTED

    signed = sum(1 for s in statuses if s == SignerStatus.SIGNED)
    if statuses and signed == len(statuses):
        return DocumentStatus.SIGNED
    if signed:
        return DocumentStatus.PARTIALLY_SIGNED
    return DocumentStatus.PENDING


def is_terminal(status) -> bool:
    return DocumentStatus(status) in TERMINAL_DOCUMENT_STATUSES


def ensure_document_open(document) -> None:
    # Terminal documents never move again, even if a pending signer is left over.
    if is_terminal(document.status):
        raise DocumentFinalized(document.status)
