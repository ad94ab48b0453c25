"""
QR image rendering for payloads (qrcode + Pillow).
"""

import base64
import io
import logging

import qrcode
import qrcode.image.svg

from integrity.payload import QRPayload

logger = logging.getLogger(__name__)

BOX_SIZE = 8
BORDER = 1


def _build(data: str) -> qrcode.QRCode:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=BOX_SIZE,
        border=BORDER,
    )
    qr.add_data(data)
    qr.make(fit=True)
    return qr


def render_png(payload: QRPayload) -> bytes:
    img = _build(payload.to_json()).make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    png = buf.getvalue()
    logger.debug("Rendered %s QR (%d bytes) for %s", payload.kind, len(png), payload.hash)
    return png


def render_png_data_url(payload: QRPayload) -> str:
    return "data:image/png;base64," + base64.b64encode(render_png(payload)).decode("ascii")


def render_svg(payload: QRPayload) -> str:
    img = _build(payload.to_json()).make_image(image_factory=qrcode.image.svg.SvgPathImage)
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue().decode("utf-8")
