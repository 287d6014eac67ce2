import logging
import smtplib
from email.message import EmailMessage

from ..config import Settings

logger = logging.getLogger(__name__)


class Mailer:
    """Fire-and-forget notifications. Failures are logged, never raised."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def enabled(self) -> bool:
        return bool(self.settings.smtp_host)

    def send(self, to: str, subject: str, text: str, html: str = None) -> bool:
        if not self.enabled:
            logger.info("SMTP not configured, email to %s: %s | %s", to, subject, text)
            return False

        message = EmailMessage()
        message["From"] = self.settings.smtp_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port,
                              timeout=self.settings.smtp_timeout) as smtp:
                smtp.starttls()
                if self.settings.smtp_user:
                    smtp.login(self.settings.smtp_user, self.settings.smtp_password or "")
                smtp.send_message(message)
        except Exception:
            logger.exception("Failed to send email to %s", to)
            return False

        logger.info("Sent email %r to %s", subject, to)
        return True

    def send_signing_invitation(self, to: str, signing_url: str) -> bool:
        return self.send(
            to,
            "You have been asked to sign a document",
            f"Please review and sign the document: {signing_url}",
            f'<p>Please review and sign the document: <a href="{signing_url}">Open document</a></p>',
        )

    def send_signed_document(self, to: str, document_url: str) -> bool:
        return self.send(
            to,
            "Your Signed Document",
            f"Please find your signed document: {document_url}",
            f'<p>Please find your signed document: <a href="{document_url}">Download</a></p>',
        )
