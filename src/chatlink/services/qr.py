from __future__ import annotations

import base64
import io
import logging

import qrcode

logger = logging.getLogger("chatlink.lifecycle")


def render_data_uri(payload: str) -> str:
    """Render a pairing payload as a PNG data URI; the raw payload is returned if rendering fails."""
    try:
        image = qrcode.make(payload)
        buf = io.BytesIO()
        image.save(buf, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
    except Exception:
        logger.warning("qr_render_failed; keeping raw pairing payload")
        return payload
