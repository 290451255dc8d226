# =============================================================================
# HyperWa -- QR Rendering
# =============================================================================

from __future__ import annotations

import io
import sys
from typing import TextIO

import qrcode


def render_qr(payload: str) -> str:
    """Render *payload* as a block-character QR code."""
    code = qrcode.QRCode(border=1)
    code.add_data(payload)
    code.make(fit=True)
    out = io.StringIO()
    code.print_ascii(out=out, invert=True)
    return out.getvalue()


def print_qr(payload: str, out: TextIO | None = None) -> None:
    """Local fallback when no bridge takes the QR code."""
    stream = out or sys.stdout
    stream.write(render_qr(payload))
    stream.flush()
