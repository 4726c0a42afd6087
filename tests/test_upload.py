from datetime import UTC, datetime, timedelta

from app.db import ACCESS_LOG_COLLECTION, QUARANTINE_COLLECTION, UPLOADED_COLLECTION
from app.ingestion import IngestionPipeline
from fakes import MP3_BYTES, PNG_HEADER, image_bytes, pdf_bytes


def post_documents(client, *files, **kwargs):
    payload = [("files", item) for item in files]
    return client.post("/upload-document", files=payload, **kwargs)


def post_photos(client, *files, **kwargs):
    payload = [("files", item) for item in files]
    return client.post("/upload-photo", files=payload, **kwargs)


# ─── Dokument-pipelinen ──────────────────────────────────────────────────────

def test_upload_pdf_returns_file_id_and_four_hour_url(client, fake_db, fake_storage):
    r = post_documents(client, ("invoice.pdf", pdf_bytes(2 * 1024 * 1024), "application/pdf"))
    assert r.status_code == 200
    body = r.json()
    assert body == {
        "success": True,
        "processed": 1,
        "failed": 0,
        "quarantined": 0,
        "results": body["results"],
    }
    result = body["results"][0]
    assert result["success"] is True
    assert result["fileId"]
    assert result["url"].startswith("https://storage.test/uploads-processed/")
    assert "quarantined" not in result
    assert "error" not in result

    assert len(fake_storage.signed) == 1
    assert fake_storage.signed[0][2] == 4 * 60 * 60

    stored = fake_db[UPLOADED_COLLECTION].items
    assert len(stored) == 1
    assert stored[0]["id"] == result["fileId"]
    assert stored[0]["file_type"] == "document"
    assert stored[0]["file_size_bytes"] == 2 * 1024 * 1024

    logs = fake_db[ACCESS_LOG_COLLECTION].items
    assert len(logs) == 1
    assert logs[0]["action"] == "upload"
    assert logs[0]["file_id"] == result["fileId"]


def test_png_bytes_named_jpg_are_quarantined(client, fake_db, fake_storage):
    content = PNG_HEADER + b"\x00" * 64
    r = post_documents(client, ("photo.jpg", content, "image/jpeg"))
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is False
    assert body["quarantined"] == 1
    assert body["results"][0]["quarantined"] is True
    assert body["results"][0]["error"] == "File validation failed"

    record = fake_db[QUARANTINE_COLLECTION].items[0]
    assert record["reason"] == "magic_bytes_mismatch"
    assert "spoofing" in record["reason_detail"]
    assert record["magic_bytes"].startswith("89 50 4e 47")
    assert len(record["magic_bytes"].split()) == 16
    assert fake_storage.objects == {}


def test_eleven_files_rejects_whole_batch(client, fake_db, fake_storage):
    files = [(f"doc{i}.pdf", pdf_bytes(), "application/pdf") for i in range(11)]
    r = post_documents(client, *files)
    assert r.status_code == 400
    assert r.json() == {"error": "Maximum 10 files per request"}
    assert fake_db.collections == {}
    assert fake_storage.objects == {}


def test_total_size_limit_rejects_whole_batch(client, monkeypatch, fake_storage):
    monkeypatch.setattr("app.ingestion.MAX_BATCH_BYTES", 1000)
    r = post_documents(
        client,
        ("a.pdf", pdf_bytes(600), "application/pdf"),
        ("b.pdf", pdf_bytes(600), "application/pdf"),
    )
    assert r.status_code == 400
    assert "Total file size exceeds" in r.json()["error"]
    assert fake_storage.objects == {}


def test_no_files_returns_400(client):
    r = client.post("/upload-document", data={"tenant_id": "club-1"})
    assert r.status_code == 400
    assert r.json() == {"error": "No files provided"}


def test_txt_with_script_is_quarantined(client, fake_db):
    r = post_documents(client, ("notes.txt", b"<script>alert(1)</script>", "text/plain"))
    assert r.status_code == 200
    result = r.json()["results"][0]
    assert result["quarantined"] is True
    assert result["error"] == "File failed security scan"

    record = fake_db[QUARANTINE_COLLECTION].items[0]
    assert record["reason"] == "embedded_script"
    assert record["reason_detail"] == "Embedded script detected"


def test_mixed_batch_isolates_quarantine(client, fake_db):
    r = post_documents(
        client,
        ("song.mp3", MP3_BYTES, "audio/mpeg"),
        ("report.pdf", b"not a pdf at all", "application/pdf"),
    )
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["processed"] == 1
    assert body["failed"] == 0
    assert body["quarantined"] == 1

    stored = fake_db[UPLOADED_COLLECTION].items
    assert len(stored) == 1
    assert stored[0]["original_filename"] == "song.mp3"
    assert stored[0]["file_type"] == "audio"
    assert stored[0]["processing_status"] == "completed"
    assert fake_db[QUARANTINE_COLLECTION].items[0]["original_filename"] == "report.pdf"


def test_blocked_extension_quarantined_regardless_of_content(client, fake_db):
    r = post_documents(client, ("payload.exe", pdf_bytes(), "application/pdf"))
    result = r.json()["results"][0]
    assert result == {
        "success": False,
        "filename": "payload.exe",
        "error": "File type not allowed",
        "quarantined": True,
    }
    assert fake_db[QUARANTINE_COLLECTION].items[0]["reason"] == "blocked_extension"


def test_double_extension_quarantined(client, fake_db):
    r = post_documents(client, ("doc.exe.pdf", pdf_bytes(), "application/pdf"))
    result = r.json()["results"][0]
    assert result["quarantined"] is True
    assert result["error"] == "Suspicious file name"
    assert fake_db[QUARANTINE_COLLECTION].items[0]["reason"] == "double_extension"


def test_unsupported_extension_is_soft_failure(client, fake_db):
    r = post_documents(client, ("archive.rar", b"Rar!\x1a\x07", "application/x-rar"))
    body = r.json()
    assert body["failed"] == 1
    assert body["quarantined"] == 0
    assert body["results"][0]["error"] == "File type not supported: rar"
    assert "quarantined" not in body["results"][0]
    assert QUARANTINE_COLLECTION not in fake_db.collections


def test_tenant_id_is_recorded(client, fake_db):
    r = post_documents(
        client,
        ("invoice.pdf", pdf_bytes(), "application/pdf"),
        data={"tenant_id": "district-42"},
    )
    assert r.json()["processed"] == 1
    assert fake_db[UPLOADED_COLLECTION].items[0]["tenant_id"] == "district-42"


def test_forwarded_ip_and_user_agent_are_recorded(client, fake_db):
    post_documents(
        client,
        ("payload.exe", b"MZ", "application/octet-stream"),
        headers={"x-forwarded-for": "203.0.113.9, 10.0.0.1", "user-agent": "pytest-agent"},
    )
    record = fake_db[QUARANTINE_COLLECTION].items[0]
    assert record["upload_ip"] == "203.0.113.9"
    assert record["user_agent"] == "pytest-agent"


def test_unexpected_error_returns_500_without_results(client, monkeypatch):
    async def explode(self, files, uploader):
        raise RuntimeError("boom")

    monkeypatch.setattr(IngestionPipeline, "process_batch", explode)
    r = post_documents(client, ("invoice.pdf", pdf_bytes(), "application/pdf"))
    assert r.status_code == 500
    assert r.json() == {"error": "Internal server error"}


# ─── Foto-pipelinen ──────────────────────────────────────────────────────────

def test_photo_upload_returns_three_variant_urls(client, fake_db, fake_storage):
    r = post_photos(client, ("team.png", image_bytes("PNG", (800, 600)), "image/png"))
    assert r.status_code == 200
    result = r.json()["results"][0]
    assert result["success"] is True
    assert "url" not in result
    for key in ("standardUrl", "previewUrl", "thumbUrl"):
        assert result[key].startswith("https://storage.test/uploads-processed/")

    assert all(ttl == 60 * 60 for _bucket, _path, ttl in fake_storage.signed)
    buckets = sorted(bucket for bucket, _path in fake_storage.objects)
    assert buckets == ["uploads-processed"] * 3 + ["uploads-raw"]

    stored = fake_db[UPLOADED_COLLECTION].items[0]
    assert stored["raw_path"].endswith(f"{result['fileId']}_raw.png")
    assert stored["thumb_path"].endswith(f"{result['fileId']}_thumb.png")
    assert stored["metadata_stripped"] is True


def test_photo_rejects_non_image_mime(client, fake_db):
    r = post_photos(client, ("team.jpg", image_bytes("JPEG"), "application/octet-stream"))
    result = r.json()["results"][0]
    assert result["error"] == "File type not allowed. Accepted: JPG, PNG, HEIC, HEIF"
    assert "quarantined" not in result
    assert fake_db.collections == {}


def test_photo_rejects_document_extensions(client):
    r = post_photos(client, ("invoice.pdf", pdf_bytes(), "application/pdf"))
    assert r.json()["results"][0]["error"] == "File type not supported: pdf"


# ─── Lista och metrics ────────────────────────────────────────────────────────

def test_uploads_list_only_returns_own_files(client, fake_db):
    post_documents(client, ("invoice.pdf", pdf_bytes(), "application/pdf"))
    fake_db[UPLOADED_COLLECTION].items.append({"id": "other", "user_id": "someone-else"})

    r = client.get("/uploads")
    assert r.status_code == 200
    items = r.json()["items"]
    assert [item["original_filename"] for item in items] == ["invoice.pdf"]


def test_uploads_list_returns_503_when_db_unavailable(client, fake_db):
    fake_db[UPLOADED_COLLECTION].fail_reads = True
    r = client.get("/uploads")
    assert r.status_code == 503
    assert r.json() == {"error": "Database unavailable"}


def test_metrics_summary_counts_stored_and_quarantined(client):
    post_documents(
        client,
        ("invoice.pdf", pdf_bytes(), "application/pdf"),
        ("payload.exe", b"MZ", "application/octet-stream"),
        ("notes.txt", b"<?php echo 1; ?>", "text/plain"),
    )
    r = client.get("/metrics/summary")
    assert r.status_code == 200
    body = r.json()
    assert body["last_24h"]["stored"] == 1
    assert body["last_24h"]["quarantined"] == 2
    assert body["all_time"]["total_files"] == 3
    reasons = {row["reason"] for row in body["top_quarantine_reasons_7d"]}
    assert reasons == {"blocked_extension", "embedded_php"}


def test_metrics_summary_counts_every_record(client, fake_db):
    now = datetime.now(UTC)
    fake_db[UPLOADED_COLLECTION].items.extend(
        {"id": str(i), "created_at": now - timedelta(days=30)} for i in range(1500)
    )
    fake_db[QUARANTINE_COLLECTION].items.append(
        {"created_at": now - timedelta(days=3), "reason": "double_extension"}
    )

    body = client.get("/metrics/summary").json()
    assert body["all_time"]["stored"] == 1500
    assert body["all_time"]["total_files"] == 1501
    assert body["last_7d"] == {
        "total_files": 1, "stored": 0, "quarantined": 1, "quarantine_rate_percent": 100.0,
    }
    assert body["last_24h"]["total_files"] == 0
    assert body["top_quarantine_reasons_7d"] == [{"reason": "double_extension", "count": 1}]


def test_metrics_summary_returns_503_when_db_unavailable(client, fake_db):
    fake_db[QUARANTINE_COLLECTION].fail_reads = True
    r = client.get("/metrics/summary")
    assert r.status_code == 503


# ─── Auth-tester ─────────────────────────────────────────────────────────────

def test_upload_without_apikey_returns_401_when_auth_enabled(authed_client, fake_db):
    r = post_documents(authed_client, ("invoice.pdf", pdf_bytes(), "application/pdf"))
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}
    assert fake_db.collections == {}


def test_upload_with_valid_apikey_records_user(authed_client, fake_db):
    r = post_documents(
        authed_client,
        ("invoice.pdf", pdf_bytes(), "application/pdf"),
        headers={"X-API-Key": "test-secret-key"},
    )
    assert r.status_code == 200
    stored = fake_db[UPLOADED_COLLECTION].items[0]
    assert stored["user_id"] == "testuser"
    assert stored["standard_path"].startswith("testuser/")


def test_bearer_mode_without_header_returns_401(client, monkeypatch):
    monkeypatch.setattr("app.auth.AUTH_MODE", "supabase")
    r = post_documents(client, ("invoice.pdf", pdf_bytes(), "application/pdf"))
    assert r.status_code == 401
    assert r.json() == {"error": "No authorization header"}


def test_bearer_mode_with_invalid_token_returns_401(client, monkeypatch):
    async def reject(_token):
        return None

    monkeypatch.setattr("app.auth.AUTH_MODE", "supabase")
    monkeypatch.setattr("app.auth._resolve_supabase_user", reject)
    r = post_documents(
        client,
        ("invoice.pdf", pdf_bytes(), "application/pdf"),
        headers={"Authorization": "Bearer nope"},
    )
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}


def test_bearer_mode_with_valid_token_uses_resolved_user(client, monkeypatch, fake_db):
    async def accept(token):
        assert token == "good-token"
        return "user-123"

    monkeypatch.setattr("app.auth.AUTH_MODE", "supabase")
    monkeypatch.setattr("app.auth._resolve_supabase_user", accept)
    r = post_documents(
        client,
        ("invoice.pdf", pdf_bytes(), "application/pdf"),
        headers={"Authorization": "Bearer good-token"},
    )
    assert r.status_code == 200
    assert fake_db[UPLOADED_COLLECTION].items[0]["user_id"] == "user-123"


# ─── CORS ────────────────────────────────────────────────────────────────────

def test_preflight_echoes_allowed_origin(client):
    r = client.options("/upload-document", headers={"Origin": "https://team-app.lovableproject.com"})
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "https://team-app.lovableproject.com"
    assert "authorization" in r.headers["access-control-allow-headers"]


def test_preflight_does_not_reflect_unknown_origin(client):
    r = client.options("/upload-document", headers={"Origin": "https://evil.example"})
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "https://lovable.dev"


def test_cors_headers_on_regular_response(client):
    r = client.get("/health", headers={"Origin": "https://lovable.dev"})
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "https://lovable.dev"
