# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Terminal rendering of pairing tokens as QR codes."""

import io

import qrcode


def render_qr(token: str, *, invert: bool = True) -> str:
    """Render ``token`` as an ASCII-art QR code suitable for a terminal."""
    code = qrcode.QRCode(border=1)
    code.add_data(token)
    code.make(fit=True)
    buffer = io.StringIO()
    code.print_ascii(out=buffer, invert=invert)
    return buffer.getvalue()
