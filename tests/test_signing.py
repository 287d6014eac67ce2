import asyncio
import io
import threading

import pytest
from pypdf import PdfReader

from app import models
from app.exceptions import (
    AlreadyResponded,
    DocumentFinalized,
    DocumentNotFound,
    DuplicateSigner,
    InvalidEmail,
    InvalidPayload,
    InvalidReason,
    PermissionDenied,
    SignerNotFound,
)
from app.models import DocumentStatus, SignerStatus
from app.services.audit import AuditTrail
from app.services.signing import (
    DEFAULT_REJECTION_REASON,
    RejectionPolicy,
    SignaturePayload,
    SignerRef,
    SigningService,
)
from app.services.tokens import SigningTokenService
from app.store import InMemoryDocumentStore

TYPED = {"type": "TYPED", "imageData": "...", "x": 10, "y": 20, "page": 1}


def accept(service, signer, payload=TYPED):
    return asyncio.run(service.accept_signing(SignerRef.for_token_holder(signer), payload))


def reject(service, signer, reason=None):
    return asyncio.run(service.reject_signing(SignerRef.for_token_holder(signer), reason))


def actions(store, document_id):
    return [e.action for e in store.list_audit_logs(document_id)]


# Accept and reject

def test_first_of_two_signers_accepts(store, service, make_document):
    document = make_document()
    s1, s2 = service.add_signers(document.id, ["s1@x.com", "s2@x.com"], document.owner_id)
    assert document.status == DocumentStatus.PENDING

    result = accept(service, s1)

    assert result.signature.signer_id == s1.id
    assert result.signature.page == 1
    assert s1.status == SignerStatus.SIGNED
    assert s1.signed_at is not None
    assert result.document_status == DocumentStatus.PARTIALLY_SIGNED
    assert store.get_document(document.id).status == DocumentStatus.PARTIALLY_SIGNED
    assert "SIGNER_SIGNED (s1@x.com)" in actions(store, document.id)


def test_rejection_overrides_partial_signing(store, service, make_document):
    document = make_document()
    s1, s2 = service.add_signers(document.id, ["s1@x.com", "s2@x.com"], document.owner_id)
    accept(service, s1)

    result = reject(service, s2, "wrong doc")

    assert s2.status == SignerStatus.REJECTED
    assert s2.rejection_reason == "wrong doc"
    assert result.document_status == DocumentStatus.REJECTED
    assert store.get_document(document.id).status == DocumentStatus.REJECTED


def test_single_signer_goes_straight_to_signed(store, service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)

    result = accept(service, s1)

    assert result.document_status == DocumentStatus.SIGNED
    assert result.completed
    assert actions(store, document.id)[-1] == "DOCUMENT_COMPLETED"


def test_second_accept_is_refused_without_side_effects(store, service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)
    accept(service, s1)
    audit_before = actions(store, document.id)

    with pytest.raises(AlreadyResponded) as exc:
        accept(service, s1)

    assert exc.value.status_code == 409
    assert store.get_document(document.id).status == DocumentStatus.SIGNED
    assert len(store.list_signatures(document.id)) == 1
    assert actions(store, document.id) == audit_before


def test_reject_after_accept_is_refused(store, service, make_document):
    document = make_document()
    s1, s2 = service.add_signers(document.id, ["s1@x.com", "s2@x.com"], document.owner_id)
    accept(service, s1)

    with pytest.raises(AlreadyResponded):
        reject(service, s1, "changed my mind")
    assert s1.status == SignerStatus.SIGNED
    assert store.get_document(document.id).status == DocumentStatus.PARTIALLY_SIGNED


def test_pending_signer_cannot_act_on_rejected_document(store, service, make_document):
    document = make_document()
    s1, s2 = service.add_signers(document.id, ["s1@x.com", "s2@x.com"], document.owner_id)
    reject(service, s1)

    with pytest.raises(DocumentFinalized):
        accept(service, s2)
    assert s2.status == SignerStatus.PENDING
    assert store.list_signatures(document.id) == []


def test_token_rejection_without_reason_uses_default(service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)

    reject(service, s1, "   ")

    assert s1.rejection_reason == DEFAULT_REJECTION_REASON


def test_token_holder_only_touches_own_record(service, make_document):
    document = make_document()
    s1, s2 = service.add_signers(document.id, ["s1@x.com", "s2@x.com"], document.owner_id)

    accept(service, s1)

    assert s2.status == SignerStatus.PENDING
    assert s2.signed_at is None


# Owner acting on behalf of a signer

def test_owner_accepts_for_signer(store, service, make_document, signature_payload):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)
    ref = SignerRef(signer_id=s1.id, document_id=document.id, owner_id=document.owner_id)

    result = asyncio.run(service.accept_signing(ref, signature_payload))

    assert result.document_status == DocumentStatus.SIGNED
    assert "SIGNER_SIGNED (s1@x.com) by owner" in actions(store, document.id)


def test_owner_rejection_requires_reason(service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)
    ref = SignerRef(signer_id=s1.id, document_id=document.id, owner_id=document.owner_id)

    with pytest.raises(InvalidReason):
        asyncio.run(service.reject_signing(ref, "no", policy=RejectionPolicy.OWNER))
    assert s1.status == SignerStatus.PENDING

    result = asyncio.run(service.reject_signing(ref, "  duplicate request ", policy=RejectionPolicy.OWNER))
    assert s1.rejection_reason == "duplicate request"
    assert result.document_status == DocumentStatus.REJECTED


def test_only_the_owner_may_act_for_signers(service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)
    ref = SignerRef(signer_id=s1.id, document_id=document.id, owner_id="someone-else")

    with pytest.raises(PermissionDenied):
        asyncio.run(service.accept_signing(ref, TYPED))
    assert s1.status == SignerStatus.PENDING


def test_signer_must_belong_to_document(service, make_document):
    document = make_document()
    other = make_document()
    s1, = service.add_signers(other.id, ["s1@x.com"], other.owner_id)
    ref = SignerRef(signer_id=s1.id, document_id=document.id, owner_id=document.owner_id)

    with pytest.raises(SignerNotFound):
        asyncio.run(service.accept_signing(ref, TYPED))


def test_unknown_document(service):
    ref = SignerRef(signer_id="nope", document_id="missing", owner_id="owner-1")
    with pytest.raises(DocumentNotFound):
        asyncio.run(service.reject_signing(ref, "whatever", policy=RejectionPolicy.OWNER))


# Signature payload

def test_payload_reports_every_problem():
    with pytest.raises(InvalidPayload) as exc:
        SignaturePayload.parse({"type": "STAMP", "x": "10", "y": -1, "page": 0})

    errors = exc.value.details["errors"]
    assert len(errors) == 5
    assert exc.value.status_code == 400


@pytest.mark.parametrize("body", [None, [], "x"])
def test_payload_must_be_an_object(body):
    with pytest.raises(InvalidPayload):
        SignaturePayload.parse(body)


def test_payload_rejects_booleans_and_non_finite_numbers():
    with pytest.raises(InvalidPayload):
        SignaturePayload.parse({**TYPED, "x": True})
    with pytest.raises(InvalidPayload):
        SignaturePayload.parse({**TYPED, "y": float("nan")})


def test_payload_accepts_legacy_image_key():
    payload = SignaturePayload.parse(
        {"type": "IMAGE", "signatureImage": "abc", "x": 0, "y": 0.5, "page": 2.0}
    )
    assert payload.image_data == "abc"
    assert payload.page == 2


def test_page_beyond_document_is_refused(store, service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)

    with pytest.raises(InvalidPayload):
        accept(service, s1, {**TYPED, "page": 3})
    assert s1.status == SignerStatus.PENDING
    assert store.list_signatures(document.id) == []


# Adding signers

def test_duplicates_are_reported_together(store, service, make_document):
    document = make_document()
    service.add_signers(document.id, ["a@x.com"], document.owner_id)

    with pytest.raises(DuplicateSigner) as exc:
        service.add_signers(document.id, ["a@x.com", "A@X.com"], document.owner_id)

    assert exc.value.details["duplicates"] == ["a@x.com", "A@X.com"]
    assert len(store.list_signers(document.id)) == 1


def test_invalid_email_creates_nothing(store, service, make_document):
    document = make_document()

    with pytest.raises(InvalidEmail) as exc:
        service.add_signers(document.id, ["ok@x.com", "not-an-email"], document.owner_id)

    assert exc.value.details["invalid_emails"] == ["not-an-email"]
    assert store.list_signers(document.id) == []
    assert actions(store, document.id) == []


@pytest.mark.parametrize("emails", [[], "a@x.com", None])
def test_emails_must_be_a_non_empty_list(service, make_document, emails):
    document = make_document()
    with pytest.raises(InvalidEmail):
        service.add_signers(document.id, emails, document.owner_id)


def test_signers_are_normalised_and_get_distinct_tokens(service, make_document):
    document = make_document()

    s1, s2 = service.add_signers(document.id, [" Alice@X.com ", "bob@x.com"], document.owner_id)

    assert s1.email == "alice@x.com"
    assert s1.status == SignerStatus.PENDING
    assert s1.token != s2.token


def test_only_the_owner_adds_signers(service, make_document):
    document = make_document()
    with pytest.raises(PermissionDenied):
        service.add_signers(document.id, ["a@x.com"], "intruder")


def test_adding_signer_to_finished_document_is_refused(service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)
    accept(service, s1)

    with pytest.raises(DocumentFinalized):
        service.add_signers(document.id, ["late@x.com"], document.owner_id)


def test_signers_added_later_count_towards_status(store, service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)
    s2, = service.add_signers(document.id, ["s2@x.com"], document.owner_id)
    accept(service, s1)

    assert store.get_document(document.id).status == DocumentStatus.PARTIALLY_SIGNED


# Concurrency

def _race(*calls):
    outcomes = []
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            outcomes.append(call())
        except Exception as e:
            outcomes.append(e)

    threads = [threading.Thread(target=run, args=(call,)) for call in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


def test_concurrent_accepts_by_same_signer(store, service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)

    outcomes = _race(lambda: accept(service, s1), lambda: accept(service, s1))

    assert sum(isinstance(o, AlreadyResponded) for o in outcomes) == 1
    assert len(store.list_signatures(document.id)) == 1


def test_last_two_signers_racing_complete_the_document(store, service, make_document):
    document = make_document()
    s1, s2 = service.add_signers(document.id, ["s1@x.com", "s2@x.com"], document.owner_id)

    outcomes = _race(lambda: accept(service, s1), lambda: accept(service, s2))

    assert not any(isinstance(o, Exception) for o in outcomes)
    assert store.get_document(document.id).status == DocumentStatus.SIGNED
    assert actions(store, document.id).count("DOCUMENT_COMPLETED") == 1


# Signed PDF embedding

class _BrokenBackend:
    async def upload_file(self, content, filename, folder="uploads"):
        raise OSError("disk full")

    async def download_file(self, file_path):
        raise OSError("gone")

    async def delete_file(self, file_path):
        return False


def test_signatures_are_stamped_once_everyone_signed(store, tokens, audit, storage, make_document,
                                                    signature_payload):
    service = SigningService(store, tokens, audit, storage=storage, embed_mode="final")
    document = make_document()
    s1, s2 = service.add_signers(document.id, ["s1@x.com", "s2@x.com"], document.owner_id)

    accept(service, s1, signature_payload)
    assert store.get_document(document.id).signed_url is None

    accept(service, s2, {**signature_payload, "page": 2})
    signed_url = store.get_document(document.id).signed_url
    assert signed_url

    signed = asyncio.run(storage.download_file(signed_url))
    assert len(PdfReader(io.BytesIO(signed)).pages) == 2
    assert "SIGNED_PDF_GENERATED" in actions(store, document.id)


def test_each_mode_restamps_after_every_signature(store, tokens, audit, storage, make_document,
                                                  signature_payload):
    service = SigningService(store, tokens, audit, storage=storage, embed_mode="each")
    document = make_document()
    s1, s2 = service.add_signers(document.id, ["s1@x.com", "s2@x.com"], document.owner_id)

    accept(service, s1, signature_payload)

    assert store.get_document(document.id).signed_url is not None
    assert store.get_document(document.id).status == DocumentStatus.PARTIALLY_SIGNED


def test_embedding_failure_does_not_undo_the_signature(store, tokens, audit, make_document,
                                                       signature_payload):
    from app.services.storage import ObjectStorage

    service = SigningService(store, tokens, audit, storage=ObjectStorage(_BrokenBackend(), timeout=1),
                             embed_mode="final")
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)

    result = accept(service, s1, signature_payload)

    assert result.document_status == DocumentStatus.SIGNED
    assert store.get_document(document.id).signed_url is None
    assert "SIGNED_PDF_FAILED" in actions(store, document.id)


def test_regenerate_signed_pdf(store, tokens, audit, storage, make_document, signature_payload):
    service = SigningService(store, tokens, audit, storage=storage, embed_mode="off")
    document = make_document()
    s1, s2 = service.add_signers(document.id, ["s1@x.com", "s2@x.com"], document.owner_id)
    accept(service, s1, signature_payload)

    refreshed = asyncio.run(service.regenerate_signed_pdf(document.id, document.owner_id))

    assert refreshed.signed_url is not None
    with pytest.raises(PermissionDenied):
        asyncio.run(service.regenerate_signed_pdf(document.id, "intruder"))


def test_regenerate_refuses_rejected_document(store, tokens, audit, storage, make_document):
    service = SigningService(store, tokens, audit, storage=storage)
    document = make_document(status=models.DocumentStatus.REJECTED)

    with pytest.raises(DocumentFinalized):
        asyncio.run(service.regenerate_signed_pdf(document.id, document.owner_id))


# Unique-constraint conflicts from a concurrent writer

class _StaleSignerListStore(InMemoryDocumentStore):
    """Misses signers added by a concurrent request on the first look."""

    def __init__(self):
        super().__init__()
        self.stale_reads = 0

    def list_signers(self, document_id):
        if self.stale_reads:
            self.stale_reads -= 1
            return []
        return super().list_signers(document_id)


def test_conflicting_signer_insert_is_reported_as_duplicate():
    store = _StaleSignerListStore()
    service = SigningService(store, SigningTokenService(store), AuditTrail(store))
    with store.transaction():
        document = store.add_document(
            models.Document(owner_id="owner-1", filename="a.pdf", original_url="a.pdf", page_count=1)
        )
    service.add_signers(document.id, ["a@x.com"], "owner-1")

    store.stale_reads = 1
    with pytest.raises(DuplicateSigner) as exc:
        service.add_signers(document.id, ["b@x.com", "A@x.com"], "owner-1")

    assert exc.value.details["duplicates"] == ["A@x.com"]
    assert [s.email for s in store.list_signers(document.id)] == ["a@x.com"]


def test_conflicting_signature_insert_is_reported_as_already_responded(store, service, make_document):
    document = make_document()
    s1, = service.add_signers(document.id, ["s1@x.com"], document.owner_id)
    # A signature committed by a concurrent request the signer row does not reflect yet
    store.add_signature(
        models.Signature(document_id=document.id, signer_id=s1.id, type=models.SignatureType.TYPED,
                         value="...", x=0, y=0, page=1)
    )

    with pytest.raises(AlreadyResponded) as exc:
        accept(service, s1)

    assert exc.value.status_code == 409
    assert s1.status == SignerStatus.PENDING
    assert len(store.list_signatures(document.id)) == 1
    assert store.get_document(document.id).status == DocumentStatus.PENDING
