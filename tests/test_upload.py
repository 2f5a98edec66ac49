from accelerator.services.analytics import get_user_activity, get_user_storage_stats
from accelerator.services.storage import sanitize_path, storage

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def test_upload_requires_session(client):
    response = client.post("/api/upload", files={"file": ("a.png", PNG_BYTES, "image/png")})
    assert response.status_code == 401


def test_upload_image(auth_client, user_session):
    user_id = user_session.user.id
    response = auth_client.post(
        "/api/upload",
        files={"file": ("avatar.PNG", PNG_BYTES, "image/png")},
        data={"bucket": "avatars"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "File uploaded successfully"
    path = body["file"]["path"]
    assert path.startswith(f"user-{user_id}/")
    assert path.endswith(".png")
    assert body["file"]["full_path"] == f"avatars/{path}"
    assert storage.download("avatars", path) == PNG_BYTES

    # 存储用量和活动在后台记录
    assert get_user_storage_stats(user_id)["total_size"] == len(PNG_BYTES)
    assert get_user_activity(user_id)[0]["action"] == "file_upload"


def test_upload_custom_path_is_sanitized(auth_client):
    response = auth_client.post(
        "/api/upload",
        files={"file": ("pic.jpg", b"\xff\xd8\xff" + b"\x00" * 8, "image/jpeg")},
        data={"bucket": "images", "path": "../../etc/gallery"},
    )
    assert response.status_code == 200
    assert response.json()["file"]["path"].startswith("etc/gallery/")


def test_upload_validation(auth_client):
    no_file = auth_client.post("/api/upload", data={"bucket": "uploads"})
    assert no_file.status_code == 400
    assert no_file.json()["detail"] == "No file provided"

    bad_bucket = auth_client.post(
        "/api/upload", files={"file": ("a.png", PNG_BYTES, "image/png")}, data={"bucket": "secrets"}
    )
    assert bad_bucket.json()["detail"] == "Invalid bucket"

    bad_type = auth_client.post("/api/upload", files={"file": ("a.pdf", b"%PDF-1.4", "application/pdf")})
    assert bad_type.json()["detail"] == "Invalid file type"

    too_large = auth_client.post(
        "/api/upload", files={"file": ("big.png", b"\x00" * (10 * 1024 * 1024 + 1), "image/png")}
    )
    assert too_large.status_code == 400
    assert too_large.json()["detail"] == "File too large"


def test_sanitize_path():
    assert sanitize_path("../a/./b//c.png") == "a/b/c.png"
    assert sanitize_path("folder with spaces/x") == "folder_with_spaces/x"
    assert sanitize_path("..") == ""
