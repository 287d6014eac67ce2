import base64
import binascii
import io
import logging
from collections import defaultdict

from pypdf import PdfReader, PdfWriter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

logger = logging.getLogger(__name__)

SIGNATURE_WIDTH = 150
SIGNATURE_HEIGHT = 60


class PdfStampError(ValueError):
    pass


def read_page_count(pdf_bytes: bytes) -> int:
    """Parse ``pdf_bytes`` and return its page count; raises on damaged input."""
    reader = PdfReader(io.BytesIO(pdf_bytes))
    return len(reader.pages)


def decode_image(image_data: str) -> bytes:
    """Accepts raw base64 or a ``data:image/png;base64,...`` URL."""
    if image_data.startswith("data:"):
        try:
            _, image_data = image_data.split(",", 1)
        except ValueError:
            raise PdfStampError("Malformed data URL")
    try:
        return base64.b64decode(image_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PdfStampError(f"Signature image is not valid base64: {e}")


def sign_pdf_bytes(input_pdf_bytes: bytes, signatures: list) -> bytes:
    """
    Stamp signature images onto a PDF held in memory.

    Args:
        input_pdf_bytes: Original PDF as bytes
        signatures: list of dicts with keys: page_number, x, y, image_data,
            and optionally text and signed_at printed under the image

    Returns:
        bytes: Signed PDF as bytes
    """
    reader = PdfReader(io.BytesIO(input_pdf_bytes))
    writer = PdfWriter()

    # Group signatures by page
    sigs_by_page = defaultdict(list)
    for sig in signatures:
        page_number = int(sig["page_number"])
        if page_number < 1 or page_number > len(reader.pages):
            raise PdfStampError(
                f"Signature placed on page {page_number}, document has {len(reader.pages)} page(s)"
            )
        sigs_by_page[page_number].append(sig)

    for i, page in enumerate(reader.pages):
        page_num = i + 1

        if page_num in sigs_by_page:
            packet = io.BytesIO()
            width = float(page.mediabox.width)
            height = float(page.mediabox.height)

            c = canvas.Canvas(packet, pagesize=(width, height))

            for sig in sigs_by_page[page_num]:
                # PDF user space: origin at the bottom-left corner of the page
                x = float(sig["x"])
                y = float(sig["y"])

                image = ImageReader(io.BytesIO(decode_image(sig["image_data"])))
                c.drawImage(image, x, y, width=SIGNATURE_WIDTH, height=SIGNATURE_HEIGHT, mask="auto")

                curr_y = y - 10
                c.setFont("Helvetica", 8)
                if sig.get("text"):
                    c.drawString(x, curr_y, f"Signer: {sig['text']}")
                    curr_y -= 10
                if sig.get("signed_at"):
                    c.drawString(x, curr_y, f"Date: {sig['signed_at']}")

            c.save()
            packet.seek(0)

            overlay = PdfReader(packet)
            page.merge_page(overlay.pages[0])

        writer.add_page(page)

    output_buffer = io.BytesIO()
    writer.write(output_buffer)
    return output_buffer.getvalue()
