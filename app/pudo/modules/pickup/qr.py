from __future__ import annotations

import base64
import binascii
import logging
import struct
import time
import urllib.error
import urllib.parse
import urllib.request
import zlib
from dataclasses import dataclass
from datetime import datetime

from app.pudo.storage import Storage

from .errors import QrGenerationError

logger = logging.getLogger(__name__)

CHECKIN_PATH = "/pickup/checkin"
DEFAULT_QR_SERVICE_URL = "https://api.qrserver.com/v1/create-qr-code/?size=300x300&data={{DATA}}"

_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
)
_CONTENT_TYPES = {"png": "image/png", "jpeg": "image/jpeg", "gif": "image/gif"}


def sniff_image_type(data: bytes) -> str | None:
    for signature, kind in _SIGNATURES:
        if data.startswith(signature):
            return kind
    return None


def _png_dimensions(data: bytes) -> tuple[int, int] | None:
    pos, size, seen_data = 8, None, False
    while pos + 12 <= len(data):
        (length,) = struct.unpack(">I", data[pos : pos + 4])
        ctype = data[pos + 4 : pos + 8]
        end = pos + 12 + length
        if end > len(data):
            return None
        body = data[pos + 8 : end - 4]
        (crc,) = struct.unpack(">I", data[end - 4 : end])
        if zlib.crc32(ctype + body) & 0xFFFFFFFF != crc:
            return None
        if pos == 8:
            if ctype != b"IHDR" or length != 13:
                return None
            size = struct.unpack(">II", body[:8])
        elif ctype == b"IDAT":
            seen_data = True
        elif ctype == b"IEND":
            return size if seen_data else None
        pos = end
    return None


def _jpeg_dimensions(data: bytes) -> tuple[int, int] | None:
    if not data.endswith(b"\xff\xd9"):
        return None
    pos = 2
    while pos + 9 <= len(data):
        if data[pos] != 0xFF:
            return None
        marker = data[pos + 1]
        (length,) = struct.unpack(">H", data[pos + 2 : pos + 4])
        # SOF0..SOF15 except DHT (C4), JPG (C8) and DAC (CC)
        if 0xC0 <= marker <= 0xCF and marker not in (0xC4, 0xC8, 0xCC):
            height, width = struct.unpack(">HH", data[pos + 5 : pos + 9])
            return width, height
        pos += 2 + length
    return None


def _gif_dimensions(data: bytes) -> tuple[int, int] | None:
    if len(data) < 14 or not data.endswith(b";"):
        return None
    return struct.unpack("<HH", data[6:10])


def image_dimensions(data: bytes) -> tuple[int, int] | None:
    """(width, height) when `data` is a complete PNG, JPEG or GIF, else None."""
    kind = sniff_image_type(data)
    if kind == "png":
        size = _png_dimensions(data)
    elif kind == "jpeg":
        size = _jpeg_dimensions(data)
    elif kind == "gif":
        size = _gif_dimensions(data)
    else:
        return None
    if size is None or size[0] <= 0 or size[1] <= 0:
        return None
    return size


@dataclass(frozen=True)
class QrServiceClient:
    url_template: str = DEFAULT_QR_SERVICE_URL
    timeout_seconds: int = 6
    retries: int = 1

    def build_url(self, data: str) -> str:
        encoded = urllib.parse.quote(data, safe="")
        if "{{DATA}}" in self.url_template:
            return self.url_template.replace("{{DATA}}", encoded)
        sep = "&" if "?" in self.url_template else "?"
        return f"{self.url_template}{sep}data={encoded}"

    def fetch(self, data: str) -> bytes:
        url = self.build_url(data)
        last_err: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                req = urllib.request.Request(url, method="GET")
                req.add_header("Accept", "image/png,image/*")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    return resp.read()
            except urllib.error.HTTPError as e:
                raise QrGenerationError(f"HTTP {e.code} from QR service") from e
            except (urllib.error.URLError, OSError) as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 3))
                continue
        raise QrGenerationError(f"QR service request failed after retries: {last_err}")


def checkin_target_url(config: dict, *, location_id: int | None = None, callback_url: str | None = None) -> str:
    target = (callback_url or "").strip()
    if not target:
        base = (config.get("APP_URL") or "").strip().rstrip("/")
        target = f"{base}{CHECKIN_PATH}"
    if location_id:
        sep = "&" if "?" in target else "?"
        target = f"{target}{sep}location={int(location_id)}"
    return target


def _placeholder_image(raw: str) -> bytes:
    try:
        return base64.b64decode(raw.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise QrGenerationError("PICKUP_QR_PLACEHOLDER_BASE64 is not valid base64") from e


def fetch_qr_image(config: dict, data: str, *, client: QrServiceClient | None = None) -> bytes:
    """Image bytes for `data`: the configured placeholder when set, else the QR HTTP service."""
    placeholder = (config.get("PICKUP_QR_PLACEHOLDER_BASE64") or "").strip()
    if placeholder:
        image = _placeholder_image(placeholder)
    else:
        if client is None:
            client = QrServiceClient(
                url_template=(config.get("PICKUP_QR_SERVICE_URL") or "").strip() or DEFAULT_QR_SERVICE_URL,
                timeout_seconds=int(config.get("PICKUP_QR_HTTP_TIMEOUT") or 6),
            )
        image = client.fetch(data)
    if not image or image_dimensions(image) is None:
        raise QrGenerationError("QR payload is not a complete PNG, JPEG or GIF image")
    return image


def generate_qr_checkin(
    storage: Storage,
    config: dict,
    *,
    location_id: int | None = None,
    callback_url: str | None = None,
    now: datetime | None = None,
    client: QrServiceClient | None = None,
) -> str:
    """
    Render the check-in QR and store it. Returns the storage key,
    e.g. "pickup/qr/checkin_global_1760000000.png".
    """
    now = now or datetime.utcnow()
    target = checkin_target_url(config, location_id=location_id, callback_url=callback_url)
    image = fetch_qr_image(config, target, client=client)

    scope = str(int(location_id)) if location_id else "global"
    key = f"pickup/qr/checkin_{scope}_{int(now.timestamp())}.png"
    storage.put_bytes(key, image, content_type=_CONTENT_TYPES[sniff_image_type(image) or "png"])
    logger.info("Check-in QR stored at %s (target=%s)", key, target)
    return key
