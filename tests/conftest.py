import asyncio
import base64
import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from reportlab.pdfgen import canvas
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models
from app.config import Settings, get_settings
from app.database import Base, get_db
from app.main import app
from app.services.audit import AuditTrail
from app.services.signing import SigningService
from app.services.storage import LocalStorage, ObjectStorage
from app.services.tokens import SigningTokenService
from app.store import InMemoryDocumentStore

OWNER_ID = "owner-1"


def make_pdf(pages=2):
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer)
    for number in range(1, pages + 1):
        c.drawString(100, 750, f"Contract page {number}")
        c.showPage()
    c.save()
    return buffer.getvalue()


@pytest.fixture(scope="session")
def example_pdf():
    return make_pdf(pages=2)


@pytest.fixture(scope="session")
def signature_image():
    buffer = io.BytesIO()
    Image.new("RGB", (30, 12), color=(20, 20, 120)).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


@pytest.fixture
def signature_payload(signature_image):
    return {"type": "DRAWN", "imageData": signature_image, "x": 100, "y": 120, "page": 1}


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def storage(tmp_path):
    return ObjectStorage(LocalStorage(str(tmp_path / "files")), timeout=5)


@pytest.fixture
def tokens(store):
    return SigningTokenService(store, "http://testserver")


@pytest.fixture
def audit(store):
    return AuditTrail(store)


@pytest.fixture
def service(store, tokens, audit):
    return SigningService(store, tokens, audit)


@pytest.fixture
def make_document(store, storage, example_pdf):
    """Stores a two page PDF and returns a factory for document rows."""
    original_url = asyncio.run(storage.upload_file(example_pdf, "contract.pdf"))

    def _make(owner_id=OWNER_ID, status=models.DocumentStatus.PENDING):
        with store.transaction():
            return store.add_document(
                models.Document(
                    owner_id=owner_id,
                    filename="contract.pdf",
                    original_url=original_url,
                    page_count=2,
                    status=status,
                )
            )

    return _make


# API

@pytest.fixture
def settings(tmp_path):
    return Settings(
        secret_key="test-secret",
        public_base_url="http://testserver",
        upload_dir=str(tmp_path / "uploads"),
        pdf_embed_mode="final",
    )


@pytest.fixture
def client(settings):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def login(client):
    def _login(email="owner@example.com", password="password123"):
        resp = client.post("/register", json={"email": email, "password": password})
        assert resp.status_code == 201, resp.text
        resp = client.post("/token", data={"username": email, "password": password})
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}

    return _login
