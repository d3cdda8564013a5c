import io
import json
import time
import zipfile
from datetime import datetime, timedelta, timezone

from .conftest import client


def create_room(client, **payload):
    resp = client.post("/api/rooms", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_and_metrics(client):
    assert client.get("/api/health").json() == {"status": "ok"}
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "request_count" in resp.text


def test_create_and_share_text(client):
    room = create_room(client)
    assert room["access_mode"] == "full"
    assert room["is_pinned"] is False
    code = room["code"]

    resp = client.post(f"/api/rooms/{code}/items", json={"body": "hello"})
    assert resp.status_code == 201
    item = resp.json()
    assert item["payload"] == {"type": "text", "body": "hello"}

    resp = client.post(
        f"/api/rooms/{code}/items",
        json={"type": "code", "body": "print(1)", "language": "python"},
    )
    assert resp.json()["payload"]["language"] == "python"

    timeline = client.get(f"/api/rooms/{code}").json()
    assert timeline["room"]["code"] == code
    assert [entry["payload"]["type"] for entry in timeline["items"]] == ["text", "code"]

    fetched = client.get(f"/api/rooms/{code}/items/{item['id']}")
    assert fetched.json()["payload"]["body"] == "hello"


def test_room_errors_map_to_status_codes(client):
    resp = client.get("/api/rooms/bad")
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"

    resp = client.get("/api/rooms/abcdefgh")
    assert resp.status_code == 404
    assert resp.json() == {
        "detail": "Room abcdefgh not found or expired",
        "error": "room_not_found",
        "retryable": False,
    }

    resp = client.post("/api/rooms", json={"ttl_hours": 5})
    assert resp.status_code == 400


def test_upload_download_and_classification(client, blob_store):
    code = create_room(client)["code"]
    png = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
    resp = client.post(
        f"/api/rooms/{code}/items/upload",
        files={"upload": ("shot.png", png, "image/png")},
    )
    assert resp.status_code == 201, resp.text
    image = resp.json()
    assert image["payload"]["type"] == "image"
    assert image["payload"]["byte_size"] == len(png)
    assert blob_store.exists(image["payload"]["blob_key"])

    download = client.get(f"/api/rooms/{code}/items/{image['id']}/download")
    assert download.status_code == 200
    assert download.content == png
    assert download.headers["content-type"] == "image/png"
    assert "shot.png" in download.headers["content-disposition"]

    resp = client.post(
        f"/api/rooms/{code}/items/upload",
        files={"upload": ("main.py", b"print('hi')\n", "text/x-python")},
    )
    assert resp.json()["payload"] == {"type": "code", "body": "print('hi')\n", "language": "python"}

    resp = client.post(
        f"/api/rooms/{code}/items/upload",
        files={"upload": ("doc.pdf", b"%PDF-1.4\n<< /Type /Page >>\n", "application/pdf")},
    )
    assert resp.json()["payload"]["type"] == "pdf"
    assert resp.json()["payload"]["page_count"] == 1

    resp = client.post(
        f"/api/rooms/{code}/items/upload",
        files={"upload": ("notes.txt", b"\xff\xfe\x00binary", "text/plain")},
    )
    assert resp.json()["payload"]["type"] == "file_blob"

    text_item = client.post(f"/api/rooms/{code}/items", json={"body": "inline"}).json()
    resp = client.get(f"/api/rooms/{code}/items/{text_item['id']}/download")
    assert resp.status_code == 404
    assert resp.json()["error"] == "item_not_found"


def test_upload_too_large(client, monkeypatch):
    code = create_room(client)["code"]
    monkeypatch.setenv("MAX_FILE_SIZE", "8")
    resp = client.post(
        f"/api/rooms/{code}/items/upload",
        files={"upload": ("big.bin", b"0123456789", "application/octet-stream")},
    )
    assert resp.status_code == 413
    assert resp.json()["error"] == "payload_too_large"


def test_access_modes_over_http(client):
    code = create_room(client)["code"]
    item = client.post(f"/api/rooms/{code}/items", json={"body": "first"}).json()

    resp = client.patch(f"/api/rooms/{code}/access-mode", json={"access_mode": "read_only"})
    assert resp.json()["access_mode"] == "read_only"
    resp = client.post(f"/api/rooms/{code}/items", json={"body": "second"})
    assert resp.status_code == 403
    assert resp.json()["error"] == "access_denied"
    assert len(client.get(f"/api/rooms/{code}").json()["items"]) == 1

    client.patch(f"/api/rooms/{code}/access-mode", json={"access_mode": "drop_only"})
    assert client.post(f"/api/rooms/{code}/items", json={"body": "dropped"}).status_code == 201
    timeline = client.get(f"/api/rooms/{code}").json()
    assert timeline["room"]["access_mode"] == "drop_only"
    assert timeline["items"] is None
    assert client.get(f"/api/rooms/{code}/items/{item['id']}").status_code == 403
    assert client.get(f"/api/rooms/{code}/export").status_code == 403


def test_edit_delete_history_and_restore(client):
    code = create_room(client)["code"]
    item = client.post(f"/api/rooms/{code}/items", json={"body": "draft"}).json()
    time.sleep(0.01)
    checkpoint = datetime.now(timezone.utc)
    time.sleep(0.01)

    resp = client.patch(f"/api/rooms/{code}/items/{item['id']}", json={"body": "final"})
    assert resp.json()["version"] == 2
    resp = client.delete(f"/api/rooms/{code}/items/{item['id']}")
    assert resp.json()["is_deleted"] is True
    assert client.delete(f"/api/rooms/{code}/items/{item['id']}").json()["version"] == 3
    assert client.get(f"/api/rooms/{code}").json()["items"] == []

    resp = client.get(f"/api/rooms/{code}/history", params={"at": checkpoint.isoformat()})
    assert [entry["payload"]["body"] for entry in resp.json()] == ["draft"]

    revisions = client.get(f"/api/rooms/{code}/revisions").json()
    assert [entry["version"] for entry in revisions] == [1, 2, 3]

    resp = client.post(f"/api/rooms/{code}/restore", json={"at": checkpoint.isoformat()})
    assert resp.status_code == 200
    assert resp.json()["changed_item_ids"] == [item["id"]]
    items = client.get(f"/api/rooms/{code}").json()["items"]
    assert [entry["payload"]["body"] for entry in items] == ["draft"]
    assert items[0]["version"] == 4


def test_pin_expiry_and_delete(client):
    code = create_room(client, ttl_hours=1)["code"]

    pinned = client.post(f"/api/rooms/{code}/pin").json()
    assert pinned["is_pinned"] is True
    assert pinned["expires_at"] is None

    unpinned = client.delete(f"/api/rooms/{code}/pin", params={"ttl_hours": 24}).json()
    assert unpinned["is_pinned"] is False
    assert unpinned["expires_at"] is not None

    past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
    assert client.put(f"/api/rooms/{code}/expiry", json={"expires_at": past}).status_code == 200
    assert client.get(f"/api/rooms/{code}").status_code == 404

    live = create_room(client)["code"]
    client.post(f"/api/rooms/{live}/items/upload", files={"upload": ("a.bin", b"abc", "application/octet-stream")})
    assert client.delete(f"/api/rooms/{live}").status_code == 204
    assert client.delete(f"/api/rooms/{live}").status_code == 204
    assert client.get(f"/api/rooms/{live}").status_code == 404


def test_export_endpoint(client):
    code = create_room(client)["code"]
    client.post(f"/api/rooms/{code}/items", json={"body": "hello"})
    resp = client.get(f"/api/rooms/{code}/export")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/zip"
    archive = zipfile.ZipFile(io.BytesIO(resp.content))
    manifest = json.loads(archive.read("manifest.json"))
    assert manifest["room"] == code
    assert archive.read("text-1.txt") == b"hello"


def test_drop_only_holders_cannot_read_through_writes(client):
    code = create_room(client)["code"]
    item = client.post(f"/api/rooms/{code}/items", json={"body": "top secret"}).json()
    client.patch(f"/api/rooms/{code}/access-mode", json={"access_mode": "drop_only"})

    resp = client.post(f"/api/rooms/{code}/restore", json={"at": "2999-01-01T00:00:00Z"})
    assert resp.status_code == 200
    assert resp.json()["items"] is None
    assert "top secret" not in resp.text

    resp = client.delete(f"/api/rooms/{code}/items/{item['id']}")
    assert resp.status_code == 200
    assert resp.json()["is_deleted"] is True
    assert "payload" not in resp.json()
    assert "top secret" not in resp.text


def test_delete_room_rejects_malformed_code(client):
    resp = client.delete("/api/rooms/bad")
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"
