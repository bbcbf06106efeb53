import base64
import shutil
from pathlib import Path

from fastapi.testclient import TestClient

from tusvault.auth import principal_rate_limiter
from tusvault.db import Base, SessionLocal, engine
from tusvault.main import app
from tusvault.models import Upload
from tusvault.staging import chunk_store
from tusvault.worker import finalize_executor

PROTOCOL_HEADERS = {"X-API-Key": "dev-key", "Tus-Resumable": "1.0.0"}
OFFSET_STREAM = "application/offset+octet-stream"


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    shutil.rmtree(Path("data"), ignore_errors=True)
    principal_rate_limiter.reset()


def _metadata(**values: str) -> str:
    return ",".join(f"{key} {base64.b64encode(value.encode()).decode()}" for key, value in values.items())


def _create(client: TestClient, size: int, filename: str = "notes.txt", filetype: str = "text/plain") -> str:
    response = client.post(
        "/uploads",
        headers={"Upload-Length": str(size), "Upload-Metadata": _metadata(filename=filename, filetype=filetype)},
    )
    assert response.status_code == 201, response.text
    return response.headers["Location"].rsplit("/", 1)[-1]


def _append(client: TestClient, upload_id: str, offset: int, data: bytes, **headers: str):
    merged = {"Content-Type": OFFSET_STREAM, "Upload-Offset": str(offset)}
    merged.update(headers)
    return client.patch(f"/uploads/{upload_id}", content=data, headers=merged)


def test_create_then_status_reports_zero_offset() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        response = client.post(
            "/uploads",
            headers={"Upload-Length": "42", "Upload-Metadata": _metadata(filename="a.bin", filetype="application/pdf")},
        )
        assert response.status_code == 201
        assert response.headers["Tus-Resumable"] == "1.0.0"
        location = response.headers["Location"]
        assert location.startswith("http://testserver/uploads/")

        status = client.head(f"/uploads/{location.rsplit('/', 1)[-1]}")
        assert status.status_code == 200
        assert status.headers["Upload-Offset"] == "0"
        assert status.headers["Upload-Length"] == "42"
        assert status.headers["Cache-Control"] == "no-store"
        assert status.headers["Tus-Resumable"] == "1.0.0"

    with SessionLocal() as db:
        upload = db.get(Upload, location.rsplit("/", 1)[-1])
        assert upload is not None
        assert upload.owner_id == "dev-user"
        assert upload.file_name == "a.bin"
        assert upload.mime_type == "application/pdf"


def test_missing_version_header_is_rejected_on_every_verb() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update({"X-API-Key": "dev-key"})
        create = client.post("/uploads", headers={"Upload-Length": "4"})
        assert create.status_code == 412
        assert create.headers["Tus-Version"] == "1.0.0"
        assert create.headers["Tus-Resumable"] == "1.0.0"
        assert create.json()["error_code"] == "version_mismatch"

        status = client.head("/uploads/anything", headers={"Tus-Resumable": "0.2.2"})
        assert status.status_code == 412

        append = client.patch("/uploads/anything", content=b"x", headers={"Content-Type": OFFSET_STREAM})
        assert append.status_code == 412


def test_create_rejects_bad_length_and_missing_metadata() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        good_metadata = _metadata(filename="a.bin", filetype="application/octet-stream")

        missing = client.post("/uploads", headers={"Upload-Metadata": good_metadata})
        assert missing.status_code == 400
        assert missing.headers["Tus-Resumable"] == "1.0.0"

        not_numeric = client.post("/uploads", headers={"Upload-Length": "ten", "Upload-Metadata": good_metadata})
        assert not_numeric.status_code == 400

        negative = client.post("/uploads", headers={"Upload-Length": "-1", "Upload-Metadata": good_metadata})
        assert negative.status_code == 400

        no_filetype = client.post("/uploads", headers={"Upload-Length": "4", "Upload-Metadata": _metadata(filename="a.bin")})
        assert no_filetype.status_code == 400
        assert "filetype" in no_filetype.json()["detail"]

        no_metadata = client.post("/uploads", headers={"Upload-Length": "4"})
        assert no_metadata.status_code == 400


def test_create_skips_malformed_metadata_items() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        header = ",".join(
            [
                "broken",
                "bad !!!notbase64",
                "too many tokens",
                _metadata(filename="report.csv", filetype="text/csv"),
            ]
        )
        response = client.post("/uploads", headers={"Upload-Length": "3", "Upload-Metadata": header})
        assert response.status_code == 201


def test_create_rejects_size_above_limit(monkeypatch) -> None:
    _reset_state()
    monkeypatch.setattr("tusvault.main.settings.max_upload_size_bytes", 8)
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        response = client.post(
            "/uploads",
            headers={"Upload-Length": "9", "Upload-Metadata": _metadata(filename="a", filetype="b")},
        )
        assert response.status_code == 400


def test_status_unknown_upload_is_not_found() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        response = client.head("/uploads/does-not-exist")
        assert response.status_code == 404
        assert response.headers["Tus-Resumable"] == "1.0.0"


def test_append_preconditions_are_checked_in_order() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        upload_id = _create(client, size=8)

        wrong_type = client.patch(
            "/uploads/missing",
            content=b"abcd",
            headers={"Content-Type": "application/octet-stream", "Upload-Offset": "nope"},
        )
        assert wrong_type.status_code == 415
        assert wrong_type.json()["error_code"] == "unsupported_media_type"

        bad_offset = _append(client, "missing", 0, b"abcd", **{"Upload-Offset": "-3"})
        assert bad_offset.status_code == 400

        unknown = _append(client, "missing", 0, b"abcd")
        assert unknown.status_code == 404

        ahead = _append(client, upload_id, 2, b"abcd")
        assert ahead.status_code == 409
        assert ahead.headers["Tus-Resumable"] == "1.0.0"


def test_append_advances_offset_and_rejects_replayed_offset() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        upload_id = _create(client, size=8)

        first = _append(client, upload_id, 0, b"abcd")
        assert first.status_code == 200
        assert first.headers["Upload-Offset"] == "4"
        assert first.headers["Upload-Length"] == "8"

        replay = _append(client, upload_id, 0, b"abcd")
        assert replay.status_code == 409

        status = client.head(f"/uploads/{upload_id}")
        assert status.headers["Upload-Offset"] == "4"
        assert chunk_store.path(upload_id).read_bytes() == b"abcd"


def test_append_past_declared_length_is_conflict() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        upload_id = _create(client, size=3)
        response = _append(client, upload_id, 0, b"abcd")
        assert response.status_code == 409
        assert not chunk_store.exists(upload_id)


def test_zero_size_upload_never_accepts_chunks() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        upload_id = _create(client, size=0)
        response = _append(client, upload_id, 0, b"a")
        assert response.status_code == 409

    with SessionLocal() as db:
        upload = db.get(Upload, upload_id)
        assert upload is not None
        assert upload.is_complete is False


def test_full_upload_is_finalized_and_served_through_access_ref() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(PROTOCOL_HEADERS)
        upload_id = _create(client, size=10, filename="hello.txt", filetype="text/plain")

        first = _append(client, upload_id, 0, b"hell")
        assert first.headers["Upload-Offset"] == "4"
        second = _append(client, upload_id, 4, b"o worl")
        assert second.status_code == 200
        assert second.headers["Upload-Offset"] == "10"

        assert finalize_executor.wait_idle(timeout=10)
        assert finalize_executor.drain_errors() == []
        assert not chunk_store.exists(upload_id)

        view = client.get(f"/v1/uploads/{upload_id}")
        assert view.status_code == 200
        assert view.json()["state"] == "FINALIZED"

        ref = client.post("/v1/accrefs", json={"upload_id": upload_id})
        assert ref.status_code == 201
        ref_id = ref.json()["id"]
        assert ref.json()["url"].endswith(f"/accref/{ref_id}")

        resolved = client.get(f"/accref/{ref_id}")
        assert resolved.status_code == 200
        assert resolved.content == b"hello worl"
        assert resolved.headers["Content-Type"].startswith("text/plain")
        assert 'filename="hello.txt"' in resolved.headers["Content-Disposition"]
        assert "Last-Modified" in resolved.headers


def test_options_advertises_protocol() -> None:
    with TestClient(app) as client:
        response = client.options("/uploads")
        assert response.status_code == 204
        assert response.headers["Tus-Version"] == "1.0.0"
        assert response.headers["Tus-Resumable"] == "1.0.0"
        assert int(response.headers["Tus-Max-Size"]) > 0
