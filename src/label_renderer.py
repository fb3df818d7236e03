# label_renderer.py
# Fetches a label through the label proxy and turns it into a printable bitmap.
#
# The declared Content-Type of carrier label URLs is unreliable (S3 often says
# application/octet-stream), so the kind is sniffed from the leading bytes and the
# header is only consulted when the bytes are inconclusive.

import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import quote

import pypdfium2 as pdfium
import requests
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

KIND_PDF = "pdf"
KIND_IMAGE = "image"
KIND_UNKNOWN = "unknown"

_IMAGE_MAGIC = (
    b"\x89PNG\r\n\x1a\n",
    b"\xff\xd8\xff",
    b"GIF87a",
    b"GIF89a",
)

# PDF user space is 72 points per inch
DEFAULT_DPI = 300


class LabelFetchError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class RenderedLabel:
    kind: str
    image: Optional[Image.Image] = None
    open_url: Optional[str] = None

    @property
    def printable(self) -> bool:
        return self.image is not None


def sniff_kind(data: bytes, content_type: Optional[str] = None) -> str:
    head = data[:16] if data else b""
    if head.startswith(b"%PDF"):
        return KIND_PDF
    if any(head.startswith(m) for m in _IMAGE_MAGIC):
        return KIND_IMAGE
    ct = (content_type or "").lower()
    if "pdf" in ct:
        return KIND_PDF
    if ct.startswith("image/"):
        return KIND_IMAGE
    return KIND_UNKNOWN


def render_pdf_first_page(data: bytes, dpi: int = DEFAULT_DPI) -> Image.Image:
    pdf = pdfium.PdfDocument(data)
    try:
        page = pdf[0]
        try:
            bitmap = page.render(scale=dpi / 72.0)
            return bitmap.to_pil().convert("RGB")
        finally:
            page.close()
    finally:
        pdf.close()


def render_image(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img.convert("RGB")


class LabelRenderer:
    """Client for `GET <proxy>?url=<label url>`."""

    def __init__(self, proxy_url: str, session: Optional[requests.Session] = None,
                 timeout: int = 30, dpi: int = DEFAULT_DPI):
        self.proxy_url = proxy_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.dpi = dpi

    def proxied(self, label_url: str) -> str:
        sep = "&" if "?" in self.proxy_url else "?"
        return f"{self.proxy_url}{sep}url={quote(label_url, safe='')}"

    def fetch(self, label_url: str) -> Tuple[bytes, str]:
        try:
            r = self.session.get(self.proxied(label_url), timeout=self.timeout)
        except requests.RequestException as e:
            raise LabelFetchError(f"Label proxy unreachable: {e}") from e
        if not r.ok:
            raise LabelFetchError(f"Proxy {r.status_code}", r.status_code)
        return r.content, r.headers.get("Content-Type", "")

    def render(self, label_url: str) -> RenderedLabel:
        """
        Render the first page of a PDF label, or an image label as-is.
        Anything else (or a document that fails to decode) comes back with
        open_url set so the caller can offer "open in new tab" instead.
        """
        data, content_type = self.fetch(label_url)
        kind = sniff_kind(data, content_type)
        try:
            if kind == KIND_PDF:
                return RenderedLabel(KIND_PDF, image=render_pdf_first_page(data, self.dpi))
            if kind == KIND_IMAGE:
                return RenderedLabel(KIND_IMAGE, image=render_image(data))
        except (pdfium.PdfiumError, UnidentifiedImageError, OSError) as e:
            logger.warning(f"[LABEL-RENDER] could not decode {kind} label ({content_type}): {e}")
        else:
            logger.info(f"[LABEL-RENDER] unrecognized label format ({content_type or 'no content-type'})")
        return RenderedLabel(KIND_UNKNOWN, open_url=label_url)


def save_printable(label: RenderedLabel, out, dpi: int = DEFAULT_DPI) -> None:
    """Write the rendered bitmap as a single-page PDF for the print dialog."""
    if not label.printable:
        raise ValueError(f"Label is not printable here; open {label.open_url} instead")
    label.image.save(out, format="PDF", resolution=float(dpi))
