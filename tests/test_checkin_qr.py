"""Tests for the check-in QR artifact."""
import base64
import io
import urllib.parse
from datetime import datetime
from pathlib import Path

import pytest

from app.pudo.modules.pickup.errors import QrGenerationError
from app.pudo.modules.pickup.qr import (
    QrServiceClient,
    checkin_target_url,
    fetch_qr_image,
    generate_qr_checkin,
    image_dimensions,
    sniff_image_type,
)
from app.pudo.storage import LocalStorage, StorageError

PNG_1X1_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR4nGNgYAAAAAMAAbitOmMAAAAASUVORK5CYII="
PNG_1X1 = base64.b64decode(PNG_1X1_B64)
NOW = datetime(2026, 10, 1, 12, 0)


def _config(**overrides):
    cfg = {
        "APP_URL": "https://pudo.example",
        "PICKUP_QR_SERVICE_URL": "",
        "PICKUP_QR_PLACEHOLDER_BASE64": PNG_1X1_B64,
        "PICKUP_QR_HTTP_TIMEOUT": 6,
    }
    cfg.update(overrides)
    return cfg


def test_sniff_image_type():
    assert sniff_image_type(PNG_1X1) == "png"
    assert sniff_image_type(b"\xff\xd8\xff\xe0rest") == "jpeg"
    assert sniff_image_type(b"GIF89a....") == "gif"
    assert sniff_image_type(b"<html>oops</html>") is None


def test_image_dimensions_need_a_complete_image():
    assert image_dimensions(PNG_1X1) == (1, 1)
    assert image_dimensions(PNG_1X1[:-12]) is None
    corrupted = PNG_1X1[:23] + b"\x02" + PNG_1X1[24:]
    assert image_dimensions(corrupted) is None
    assert image_dimensions(b"GIF89a\x02\x00\x03\x00\x00\x00\x00;") == (2, 3)
    assert image_dimensions(b"GIF89a....") is None
    assert image_dimensions(b"\xff\xd8\xff\xe0rest") is None


def test_truncated_png_is_rejected(monkeypatch):
    truncated = base64.b64encode(PNG_1X1[:40]).decode("ascii")
    with pytest.raises(QrGenerationError):
        fetch_qr_image(_config(PICKUP_QR_PLACEHOLDER_BASE64=truncated), "x")

    monkeypatch.setattr("urllib.request.urlopen", lambda req, timeout=None: io.BytesIO(PNG_1X1[:-4]))
    with pytest.raises(QrGenerationError):
        fetch_qr_image(_config(PICKUP_QR_PLACEHOLDER_BASE64=""), "x")


def test_target_url_variants():
    assert checkin_target_url(_config()) == "https://pudo.example/pickup/checkin"
    assert checkin_target_url(_config(), location_id=7) == "https://pudo.example/pickup/checkin?location=7"
    assert checkin_target_url(_config(APP_URL="")) == "/pickup/checkin"
    assert (
        checkin_target_url(_config(), location_id=3, callback_url="https://kiosk.example/in?src=qr")
        == "https://kiosk.example/in?src=qr&location=3"
    )


def test_generate_with_placeholder_writes_png(tmp_path):
    storage = LocalStorage(root=tmp_path / "storage")
    key = generate_qr_checkin(storage, _config(), now=NOW)

    assert key == f"pickup/qr/checkin_global_{int(NOW.timestamp())}.png"
    stored = storage.path_for(key).read_bytes()
    assert sniff_image_type(stored) == "png"
    assert stored == PNG_1X1


def test_generate_for_location(tmp_path):
    storage = LocalStorage(root=tmp_path / "storage")
    key = generate_qr_checkin(storage, _config(), location_id=4, now=NOW)
    assert key.startswith("pickup/qr/checkin_4_")
    assert storage.exists(key)


def test_service_is_called_with_encoded_target(tmp_path, monkeypatch):
    seen = {}

    def fake_urlopen(req, timeout=None):
        seen["url"] = req.full_url
        seen["timeout"] = timeout
        return io.BytesIO(PNG_1X1)

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    storage = LocalStorage(root=tmp_path / "storage")
    key = generate_qr_checkin(storage, _config(PICKUP_QR_PLACEHOLDER_BASE64=""), location_id=2, now=NOW)

    assert storage.exists(key)
    assert seen["url"].startswith("https://api.qrserver.com/v1/create-qr-code/?size=300x300&data=")
    data = seen["url"].split("data=", 1)[1]
    assert urllib.parse.unquote(data) == "https://pudo.example/pickup/checkin?location=2"
    assert seen["timeout"] == 6


def test_service_template_without_placeholder():
    client = QrServiceClient(url_template="https://qr.example/render?size=200")
    assert client.build_url("a b") == "https://qr.example/render?size=200&data=a%20b"


def test_non_image_payload_is_rejected(monkeypatch):
    monkeypatch.setattr("urllib.request.urlopen", lambda req, timeout=None: io.BytesIO(b"<html>rate limited</html>"))
    with pytest.raises(QrGenerationError):
        fetch_qr_image(_config(PICKUP_QR_PLACEHOLDER_BASE64=""), "https://pudo.example/pickup/checkin")

    with pytest.raises(QrGenerationError):
        fetch_qr_image(_config(PICKUP_QR_PLACEHOLDER_BASE64="***not base64***"), "x")


def test_unreachable_service_raises(monkeypatch):
    def boom(req, timeout=None):
        raise OSError("connection refused")

    monkeypatch.setattr("urllib.request.urlopen", boom)
    monkeypatch.setattr("time.sleep", lambda _s: None)
    with pytest.raises(QrGenerationError):
        fetch_qr_image(_config(PICKUP_QR_PLACEHOLDER_BASE64=""), "x")


def test_storage_write_failure(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    storage = LocalStorage(root=Path(blocker))
    with pytest.raises(StorageError):
        generate_qr_checkin(storage, _config(), now=NOW)
