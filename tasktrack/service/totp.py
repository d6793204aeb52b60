from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import os
import time
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode
from qrcode.constants import ERROR_CORRECT_L
from qrcode.image.pil import PilImage

from tasktrack.logging import get_logger
from tasktrack.service.errors import QRCodeGenerationFailure

logger = get_logger(__name__)


class TOTPEngine:
    """RFC 6238 codes (HMAC-SHA1, 6 digits, 30 second steps).

    Verification is stateless: a code stays valid for every step inside the
    skew window, so callers must not treat a successful check as single-use.
    """

    SECRET_BYTES = 16

    def __init__(
        self,
        issuer: str = "Todo App",
        *,
        digits: int = 6,
        period: int = 30,
        skew: int = 1,
    ) -> None:
        self.issuer = issuer
        self.digits = digits
        self.period = period
        self.skew = skew

    def generate_secret(self) -> str:
        return base64.b32encode(os.urandom(self.SECRET_BYTES)).decode("ascii").rstrip("=")

    def provisioning_uri(
        self, secret: str, account_label: str, issuer: Optional[str] = None
    ) -> str:
        issuer = issuer or self.issuer
        label = f"{quote(issuer, safe='')}:{quote(account_label, safe='')}"
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.period,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    def render_qr(self, uri: str) -> str:
        """Encode ``uri`` as a PNG QR code and return it as a data URL."""
        try:
            qr = qrcode.QRCode(
                error_correction=ERROR_CORRECT_L,
                box_size=10,
                border=4,
                image_factory=PilImage,
            )
            qr.add_data(uri)
            qr.make(fit=True)
            image = qr.make_image()
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
        except (ValueError, OSError) as exc:
            logger.error("qr_code_render_failed", error=str(exc))
            raise QRCodeGenerationFailure("unable to render QR code") from exc
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    @staticmethod
    def _decode_secret(secret: str) -> Optional[bytes]:
        normalized = secret.strip().replace(" ", "").upper()
        padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            return None

    def code_at(self, secret: str, at_time: float) -> str:
        key = self._decode_secret(secret)
        if key is None:
            logger.warning("totp_secret_invalid")
            return ""
        return self._hotp(key, int(at_time // self.period))

    def _hotp(self, key: bytes, counter: int) -> str:
        digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify_code(
        self, secret: str, code: str, at_time: Optional[float] = None
    ) -> bool:
        """Accept ``code`` if it matches the current step or one step either side."""
        candidate = (code or "").strip().replace(" ", "")
        if len(candidate) != self.digits or not (candidate.isascii() and candidate.isdigit()):
            return False
        key = self._decode_secret(secret)
        if key is None:
            logger.warning("totp_secret_invalid")
            return False
        now = time.time() if at_time is None else at_time
        counter = int(now // self.period)
        matched = False
        for offset in range(-self.skew, self.skew + 1):
            # compare every step so timing does not reveal which one matched
            if hmac.compare_digest(self._hotp(key, counter + offset), candidate):
                matched = True
        return matched
