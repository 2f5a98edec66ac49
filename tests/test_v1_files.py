import io

from pypdf import PdfWriter

from accelerator.services.key_store import key_store
from conftest import create_user

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _pdf_bytes(title: str = "Quarterly Report") -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    writer.add_metadata({"/Title": title})
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def _upload(client, headers, name="photo.png", content=PNG_BYTES, mime="image/png", **form):
    return client.post(
        "/api/v1/files/upload",
        files={"file": (name, content, mime)},
        data=form,
        headers=headers,
    )


def test_missing_authorization_header(client):
    response = client.get("/api/v1/files")
    assert response.status_code == 401
    assert response.json() == {"message": "Missing Authorization header", "code": "UNAUTHENTICATED"}


def test_malformed_api_key(client):
    response = client.get("/api/v1/files", headers={"Authorization": "Bearer ska_live_nothex"})
    assert response.status_code == 401
    assert response.json() == {"message": "Invalid API key format", "code": "INVALID_API_KEY"}


def test_api_key_prefix_is_case_insensitive(client, api_key):
    response = client.get("/api/v1/files", headers={"Authorization": f"api-key {api_key}"})
    assert response.status_code == 200


def test_upload_and_process_image(client, api_headers):
    response = _upload(client, api_headers, process="true")
    assert response.status_code == 200
    record = response.json()
    assert record["file_type"] == "image"
    assert record["processing_status"] == "pending"

    # process=true 的处理在响应后的后台任务中完成
    detail = client.get(f"/api/v1/files/{record['id']}", headers=api_headers).json()
    assert detail["processing_status"] == "completed"
    assert detail["processed_data"]["image_format"] == "png"
    assert detail["processed_data"]["size"] == len(PNG_BYTES)


def test_upload_validation(client, api_headers):
    missing = client.post("/api/v1/files/upload", data={"process": "false"}, headers=api_headers)
    assert missing.status_code == 400
    assert missing.json()["code"] == "MISSING_FILE"

    unsupported = _upload(client, api_headers, name="notes.txt", content=b"hello", mime="text/plain")
    assert unsupported.status_code == 400
    assert unsupported.json()["code"] == "INVALID_FILE"
    assert unsupported.json()["message"].startswith("Unsupported file type: text/plain")

    bad_options = _upload(client, api_headers, options="{not json")
    assert bad_options.status_code == 400
    assert bad_options.json()["code"] == "INVALID_OPTIONS"


def test_list_files_pagination_and_stats(client, api_headers):
    for index in range(3):
        _upload(client, api_headers, name=f"photo-{index}.png")

    page = client.get("/api/v1/files", params={"limit": 1}, headers=api_headers).json()
    assert len(page["data"]) == 1
    assert page["meta"] == {"total": 3, "limit": 1, "offset": 0}

    second_page = client.get("/api/v1/files", params={"limit": 2, "page": 2}, headers=api_headers).json()
    assert second_page["meta"]["offset"] == 2
    assert len(second_page["data"]) == 1

    stats = client.get("/api/v1/files", params={"stats": "true", "limit": 1}, headers=api_headers).json()
    assert stats["total_files"] == 3
    assert stats["by_status"] == {"pending": 3}
    assert stats["by_type"] == {"image": 3}
    assert stats["processing_queue_size"] == 3
    assert stats == client.get("/api/v1/files", params={"stats": "true"}, headers=api_headers).json()


def test_stats_ignore_invalid_pagination(client, api_headers):
    _upload(client, api_headers)

    for params in ({"stats": "true", "limit": 0}, {"stats": "true", "page": "abc"}):
        response = client.get("/api/v1/files", params=params, headers=api_headers)
        assert response.status_code == 200
        assert response.json()["total_files"] == 1

    # 不带 stats 时照常校验分页参数
    assert client.get("/api/v1/files", params={"page": "abc"}, headers=api_headers).status_code == 400


def test_list_files_rejects_bad_query(client, api_headers):
    unknown = client.get("/api/v1/files", params={"sort": "name"}, headers=api_headers)
    assert unknown.status_code == 400
    assert unknown.json() == {"message": "Invalid query parameters: sort", "code": "INVALID_QUERY_PARAMS"}

    bad_limit = client.get("/api/v1/files", params={"limit": 0}, headers=api_headers)
    assert bad_limit.status_code == 400
    assert bad_limit.json()["message"] == "Limit must be a number between 1 and 100"


def test_extract_text_from_pdf(client, api_headers):
    record = _upload(client, api_headers, name="report.pdf", content=_pdf_bytes(), mime="application/pdf").json()

    response = client.post(f"/api/v1/files/{record['id']}/extract", json={}, headers=api_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["processing_status"] == "completed"
    assert body["extracted_data"]["pages"] == 1
    assert body["extracted_data"]["metadata"]["title"] == "Quarterly Report"


def test_extract_rejects_non_pdf(client, api_headers):
    record = _upload(client, api_headers).json()
    response = client.post(f"/api/v1/files/{record['id']}/extract", json={}, headers=api_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_FILE_TYPE"


def test_delete_file(client, api_headers):
    record = _upload(client, api_headers).json()

    response = client.delete(f"/api/v1/files/{record['id']}", headers=api_headers)
    assert response.status_code == 200
    assert response.json() == {"deleted": True}

    missing = client.get(f"/api/v1/files/{record['id']}", headers=api_headers)
    assert missing.status_code == 404
    assert missing.json()["code"] == "FILE_NOT_FOUND"


def test_delete_requires_delete_scope(client, api_headers, read_only_headers):
    record = _upload(client, api_headers).json()
    response = client.delete(f"/api/v1/files/{record['id']}", headers=read_only_headers)
    assert response.status_code == 403
    assert response.json() == {
        "message": "Insufficient permissions. Required scope: delete",
        "code": "INSUFFICIENT_SCOPE",
    }


def test_other_users_file_is_not_found(client, api_headers):
    record = _upload(client, api_headers).json()

    other_user, _ = create_user()
    other_key = key_store.create_key(other_user.id, "other", scopes=["*"])["key"]
    other_headers = {"Authorization": f"Bearer {other_key}"}

    assert client.get(f"/api/v1/files/{record['id']}", headers=other_headers).status_code == 404
    assert client.delete(f"/api/v1/files/{record['id']}", headers=other_headers).status_code == 404


def test_rate_limit(client, user_session):
    key = key_store.create_key(user_session.user.id, "limited", scopes=["read"], rate_limit=2)["key"]
    headers = {"Authorization": f"Bearer {key}"}

    assert client.get("/api/v1/files", headers=headers).status_code == 200
    assert client.get("/api/v1/files", headers=headers).status_code == 200
    limited = client.get("/api/v1/files", headers=headers)
    assert limited.status_code == 429
    assert limited.json()["code"] == "RATE_LIMITED"
