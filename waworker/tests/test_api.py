from __future__ import annotations

import httpx

from waworker.connection import ConnectionUpdate

from .conftest import OPEN, QR, STUB_USER


def test_send_text_when_connected(worker):
    with worker(OPEN) as env:
        response = env.client.post("/v1/send", json={"number": "6281234", "message": "hi"})
        assert response.status_code == 200
        assert response.json() == {"status": "Pesan dikirim", "to": "6281234"}
        assert env.factory.latest.sent == [
            ("text", "6281234@s.whatsapp.net", {"text": "hi"})
        ]
        assert response.headers["cache-control"].split(",")[0] == "no-store"


def test_send_text_without_session(worker, stub_factory):
    stub_factory.error = RuntimeError("offline")
    with worker() as env:
        response = env.client.post("/v1/send", json={"number": "6281234", "message": "hi"})
        assert response.status_code == 500
        assert response.json() == {"error": "WhatsApp belum terhubung"}


def test_send_text_numeric_destination_is_accepted(worker):
    with worker(OPEN) as env:
        response = env.client.post("/v1/send", json={"number": 6281234, "message": "hi"})
        assert response.status_code == 200
        assert response.json()["to"] == "6281234"


def test_send_text_missing_fields(worker):
    with worker(OPEN) as env:
        response = env.client.post("/v1/send", json={"number": "  "})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Data tidak lengkap"
        assert set(body["missing"]) == {"number", "message"}
        assert env.factory.latest.sent == []


def test_send_text_upstream_failure(worker):
    with worker(OPEN) as env:
        env.factory.latest.send_error = RuntimeError("stream errored")
        response = env.client.post("/v1/send", json={"number": "6281234", "message": "hi"})
        assert response.status_code == 500
        assert response.json() == {"error": "Gagal mengirim pesan", "detail": "stream errored"}


def test_login_pending_then_qr_then_connected(worker):
    with worker() as env:
        pending = env.client.get("/v1/login")
        assert pending.status_code == 200
        assert pending.json()["status"] == "pending"

        env.emit(QR)
        first = env.client.get("/v1/login").json()
        second = env.client.get("/v1/login").json()
        assert first["status"] == "scan_qr"
        assert first["qr"].startswith("data:image/png;base64,")
        assert first == second

        env.emit(OPEN)
        connected = env.client.get("/v1/login").json()
        assert connected == {"status": "connected", "user": STUB_USER}


def test_login_start_failure(worker, stub_factory):
    stub_factory.error = RuntimeError("version fetch failed")
    with worker() as env:
        response = env.client.get("/v1/login")
        assert response.status_code == 500
        assert response.json()["detail"] == "version fetch failed"


def test_logout_twice_succeeds(worker, auth_dir):
    with worker(OPEN) as env:
        first = env.client.post("/v1/logout")
        second = env.client.get("/v1/logout")
        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["status"] == "ok"
        assert env.manager.state == "absent"
        assert not auth_dir.exists()
        assert env.factory.latest.logout_calls == 1


def test_status_reports_snapshot(worker):
    with worker(OPEN) as env:
        payload = env.client.get("/v1/status").json()
        assert payload["state"] == "connected"
        assert payload["connected"] is True
        assert payload["user"] == STUB_USER

        env.emit(ConnectionUpdate(connection="close", status_code=401))
        payload = env.client.get("/v1/status").json()
        assert payload["connected"] is False


def test_send_image_fetch_failure_returns_400(worker, http_routes):
    http_routes["https://img.example/broken.jpg"] = httpx.Response(500)
    with worker(OPEN) as env:
        response = env.client.post(
            "/v1/send-image",
            json={"number": "6281234", "message": "foto", "imagelink": "https://img.example/broken.jpg"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Gagal mengambil gambar", "status": 500}
        assert env.factory.latest.sent == []


def test_send_image_unreachable_host_returns_400(worker, http_routes, fetched_urls):
    http_routes["https://img.example/down.jpg"] = httpx.ConnectError("connection refused")
    with worker(OPEN) as env:
        response = env.client.post(
            "/v1/group/send",
            json={"number": "120363000000", "imagelink": "https://img.example/down.jpg"},
        )
        assert response.status_code == 400
        assert response.json() == {
            "error": "Gagal mengambil gambar",
            "detail": "connection refused",
        }
        assert fetched_urls == ["https://img.example/down.jpg"]
        assert env.factory.latest.sent == []


def test_group_send_image(worker, http_routes):
    http_routes["https://img.example/ok.jpg"] = httpx.Response(
        200, content=b"jpeg-bytes", headers={"content-type": "image/jpeg"}
    )
    with worker(OPEN) as env:
        response = env.client.post(
            "/v1/group/send",
            json={"number": "120363000000", "message": "hai grup", "imagelink": "https://img.example/ok.jpg"},
        )
        assert response.status_code == 200
        assert response.json() == {"status": "Pesan dikirim", "to": "120363000000"}
        kind, jid, payload = env.factory.latest.sent[0]
        assert (kind, jid) == ("image", "120363000000@g.us")
        assert payload["caption"] == "hai grup"


def test_send_contact_validation_and_success(worker):
    with worker(OPEN) as env:
        missing = env.client.post("/v1/send-contact", json={"number": "6281234"})
        assert missing.status_code == 400
        assert set(missing.json()["missing"]) == {"contactPhone", "displayName"}

        response = env.client.post(
            "/v1/send-contact",
            json={"number": "6281234", "contactPhone": "628555", "displayName": "Sari"},
        )
        assert response.status_code == 200
        kind, jid, payload = env.factory.latest.sent[0]
        assert kind == "contact"
        assert payload["display_name"] == "Sari"


def test_send_link_preview_placeholder(worker):
    with worker(OPEN) as env:
        missing = env.client.post(
            "/v1/send-embeded-link-preview", json={"number": "6281234", "message": "x"}
        )
        assert missing.status_code == 400
        assert missing.json()["missing"] == ["link"]

        response = env.client.post(
            "/v1/send-embeded-link-preview",
            json={"number": "6281234", "message": "cek", "link": "https://blank.example/"},
        )
        assert response.status_code == 200
        text = env.factory.latest.sent[0][2]["text"]
        assert "Placeholder title" in text
        assert "Placeholder description" in text


def test_health_and_metrics(worker):
    with worker(OPEN) as env:
        health = env.client.get("/health")
        assert health.json() == {"ok": True, "state": "connected", "connected": True}
        metrics = env.client.get("/metrics")
        assert metrics.status_code == 200
        assert "wa_session_connected" in metrics.text
