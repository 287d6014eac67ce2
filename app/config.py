import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

PDF_EMBED_MODES = ("off", "final", "each")


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


@dataclass
class Settings:
    database_url: Optional[str] = None
    secret_key: str = "change-me-in-production"
    access_token_expire_minutes: int = 60 * 24
    public_base_url: str = "http://localhost:8000"
    upload_dir: str = "uploads"
    blob_token: Optional[str] = None
    storage_timeout: float = 20.0
    max_upload_bytes: int = 10 * 1024 * 1024
    # off | final (stamp once every signer has signed) | each (restamp after every signature)
    pdf_embed_mode: str = "final"
    signing_token_ttl_hours: Optional[float] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: str = "DocSign <no-reply@docsign.local>"
    smtp_timeout: float = 10.0
    log_level: str = "INFO"

    def __post_init__(self):
        if self.pdf_embed_mode not in PDF_EMBED_MODES:
            raise ValueError(
                f"PDF_EMBED_MODE must be one of {', '.join(PDF_EMBED_MODES)}, got {self.pdf_embed_mode!r}"
            )

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            secret_key=os.getenv("SECRET_KEY", cls.secret_key),
            access_token_expire_minutes=int(
                os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", cls.access_token_expire_minutes)
            ),
            public_base_url=os.getenv("PUBLIC_BASE_URL", cls.public_base_url).rstrip("/"),
            upload_dir=os.getenv("UPLOAD_DIR", cls.upload_dir),
            blob_token=os.getenv("BLOB_READ_WRITE_TOKEN"),
            storage_timeout=float(os.getenv("STORAGE_TIMEOUT", cls.storage_timeout)),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", cls.max_upload_bytes)),
            pdf_embed_mode=os.getenv("PDF_EMBED_MODE", cls.pdf_embed_mode).lower(),
            signing_token_ttl_hours=_optional_float("SIGNING_TOKEN_TTL_HOURS"),
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=int(os.getenv("SMTP_PORT", cls.smtp_port)),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            smtp_from=os.getenv("SMTP_FROM", cls.smtp_from),
            smtp_timeout=float(os.getenv("SMTP_TIMEOUT", cls.smtp_timeout)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
