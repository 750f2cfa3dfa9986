import os
import pytest
from sqlalchemy.exc import OperationalError

from storyfeed.exceptions import UpstreamFailure
from storyfeed.services.post_service import PostRepository

def publish(client, headers, title="Sunset", story="A walk at dusk.", files=None, **fields):
    data = {"title": title, "story": story, **fields}
    return client.post("/api/posts", data=data, files=files, headers=headers)

def post_ids(client, **params):
    response = client.get("/api/posts", params=params)
    assert response.status_code == 200
    return [post["id"] for post in response.json()["posts"]]

def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True}

def test_publish_then_read_example(client, auth_headers):
    """Publish as U1 without an image, then read it back anonymously"""
    response = publish(client, auth_headers("U1"), location="Goa")

    assert response.status_code == 201
    post = response.json()["post"]
    assert post["imageUrl"] is None
    assert post["authorId"] == "U1"
    assert post["title"] == "Sunset"
    assert post["story"] == "A walk at dusk."
    assert post["location"] == "Goa"
    assert post["likes"] == 0
    assert post["flagged"] is False
    assert post["createdAt"]

    feed = client.get("/api/posts", params={"limit": 1})
    assert feed.status_code == 200
    assert feed.json()["posts"][0] == post

def test_new_post_is_first(client, auth_headers):
    for i in range(3):
        publish(client, auth_headers("U1"), title=f"Post {i}")

    latest = publish(client, auth_headers("U2"), title="Latest").json()["post"]

    assert post_ids(client, limit=1) == [latest["id"]]

def test_publish_requires_token(client):
    response = publish(client, headers={})

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"
    assert post_ids(client) == []

@pytest.mark.parametrize("header", [
    "Bearer not-a-jwt",
    "Basic dXNlcjpwYXNz",
    "Bearer ",
])
def test_publish_rejects_malformed_credentials(client, header):
    response = publish(client, headers={"Authorization": header})

    assert response.status_code == 401
    assert post_ids(client) == []

@pytest.mark.parametrize("token_kwargs", [
    {"expires_in": -60},
    {"audience": "someone-else"},
    {"secret": "wrong-secret"},
])
def test_publish_rejects_invalid_tokens(client, make_token, token_kwargs):
    headers = {"Authorization": f"Bearer {make_token(**token_kwargs)}"}

    response = publish(client, headers)

    assert response.status_code == 401
    assert response.json()["detail"] == "Could not validate credentials"

@pytest.mark.parametrize("title,story", [
    ("", "A walk at dusk."),
    ("Sunset", ""),
    ("   ", "A walk at dusk."),
    ("t" * 201, "A walk at dusk."),
    ("Sunset", "s" * 2001),
])
def test_publish_validation_has_no_side_effect(client, auth_headers, title, story):
    response = publish(client, auth_headers(), title=title, story=story)

    assert response.status_code == 400
    assert post_ids(client) == []

def test_publish_accepts_length_bounds(client, auth_headers):
    response = publish(client, auth_headers(), title="t" * 200, story="s" * 2000)

    assert response.status_code == 201

def test_display_name_defaults(client, auth_headers):
    from_profile = publish(client, auth_headers("U1", full_name="Asha Rao")).json()["post"]
    from_email = publish(client, auth_headers("U2", email="dusk.walker@example.com")).json()["post"]
    explicit = publish(client, auth_headers("U3"), displayName="n" * 150).json()["post"]

    assert from_profile["authorDisplayName"] == "Asha Rao"
    assert from_email["authorDisplayName"] == "dusk.walker"
    assert explicit["authorDisplayName"] == "n" * 120

def test_client_cannot_set_moderation_flag(client, auth_headers):
    response = publish(client, auth_headers(), flagged="true", likes="99")

    assert response.status_code == 201
    assert response.json()["post"]["flagged"] is False
    assert response.json()["post"]["likes"] == 0

def test_publish_with_image(client, auth_headers, image_bytes):
    image = image_bytes()

    response = publish(client, auth_headers(), files={"image": ("dusk.PNG", image, "image/png")})

    assert response.status_code == 201
    image_url = response.json()["post"]["imageUrl"]
    assert image_url.startswith("/media/post_")
    assert image_url.endswith(".png")

    served = client.get(image_url)
    assert served.status_code == 200
    assert served.content == image

def test_empty_file_field_is_no_image(client, auth_headers):
    response = publish(client, auth_headers(), files={"image": ("", b"", "application/octet-stream")})

    assert response.status_code == 201
    assert response.json()["post"]["imageUrl"] is None

def test_upload_failure_creates_no_record(client, auth_headers, image_bytes, monkeypatch):
    async def failing_put(name, data, content_type):
        raise UpstreamFailure("Failed to store media")

    monkeypatch.setattr(client.app.state.media_uploader.storage, "put", failing_put)

    response = publish(client, auth_headers(), files={"image": ("dusk.png", image_bytes(), "image/png")})

    assert response.status_code == 500
    assert post_ids(client) == []

def test_insert_failure_discards_uploaded_image(client, auth_headers, image_bytes, media_root, monkeypatch):
    async def failing_create(self, author_id, draft, media=None):
        raise OperationalError("INSERT INTO posts", {}, Exception("database is locked"))

    monkeypatch.setattr(PostRepository, "create", failing_create)
    before = set(os.listdir(media_root))

    response = publish(client, auth_headers(), files={"image": ("dusk.png", image_bytes(), "image/png")})

    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to create post"
    assert set(os.listdir(media_root)) == before

def test_oversized_upload_rejected_before_storage(client, auth_headers, monkeypatch):
    calls = []

    async def recording_put(name, data, content_type):
        calls.append(name)

    uploader = client.app.state.media_uploader
    monkeypatch.setattr(uploader, "max_bytes", 1000)
    monkeypatch.setattr(uploader.storage, "put", recording_put)

    response = publish(client, auth_headers(), files={"image": ("big.png", b"x" * 2000, "image/png")})

    assert response.status_code == 413
    assert calls == []
    assert post_ids(client) == []

def test_declared_size_below_received_is_rejected(client, auth_headers, image_bytes):
    image = image_bytes()
    files = {"image": ("dusk.png", image, "image/png", {"Content-Length": "10"})}

    response = publish(client, auth_headers(), files=files)

    assert response.status_code == 400
    assert post_ids(client) == []

def test_unsupported_media_type(client, auth_headers):
    response = publish(client, auth_headers(), files={"image": ("notes.txt", b"hello", "text/plain")})

    assert response.status_code == 400
    assert post_ids(client) == []

def test_pagination_slices(client, auth_headers):
    for i in range(5):
        assert publish(client, auth_headers(), title=f"Post {i}").status_code == 201

    first = post_ids(client, limit=2, offset=0)
    second = post_ids(client, limit=2, offset=2)
    combined = post_ids(client, limit=4, offset=0)

    assert len(first) == 2
    assert len(second) == 2
    assert not set(first) & set(second)
    assert first + second == combined
    assert len(post_ids(client, limit=2, offset=4)) == 1

def test_posts_ordered_newest_first(client, auth_headers):
    for i in range(4):
        publish(client, auth_headers(), title=f"Post {i}")

    posts = client.get("/api/posts").json()["posts"]

    assert [post["title"] for post in posts] == ["Post 3", "Post 2", "Post 1", "Post 0"]
    created = [post["createdAt"] for post in posts]
    assert created == sorted(created, reverse=True)

def test_limit_is_clamped(client, auth_headers):
    for i in range(3):
        publish(client, auth_headers(), title=f"Post {i}")

    assert len(post_ids(client, limit=1000)) == 3
    assert len(post_ids(client, limit=0)) == 1

def test_negative_offset_is_bad_request(client):
    response = client.get("/api/posts", params={"offset": -1})

    assert response.status_code == 400

def test_delete_by_non_owner_is_forbidden(client, auth_headers):
    post = publish(client, auth_headers("U1")).json()["post"]

    response = client.delete(f"/api/posts/{post['id']}", headers=auth_headers("U2"))

    assert response.status_code == 403
    assert post_ids(client) == [post["id"]]

def test_delete_by_owner(client, auth_headers, image_bytes, media_root):
    files = {"image": ("dusk.png", image_bytes(), "image/png")}
    post = publish(client, auth_headers("U1"), files=files).json()["post"]
    object_name = post["imageUrl"].rsplit("/", 1)[-1]
    assert object_name in os.listdir(media_root)

    response = client.delete(f"/api/posts/{post['id']}", headers=auth_headers("U1"))

    assert response.status_code == 204
    assert post_ids(client) == []
    assert object_name not in os.listdir(media_root)

    again = client.delete(f"/api/posts/{post['id']}", headers=auth_headers("U1"))
    assert again.status_code == 404

def test_delete_unknown_post(client, auth_headers):
    response = client.delete("/api/posts/does-not-exist", headers=auth_headers())

    assert response.status_code == 404

def test_delete_requires_token(client, auth_headers):
    post = publish(client, auth_headers()).json()["post"]

    response = client.delete(f"/api/posts/{post['id']}")

    assert response.status_code == 401
    assert post_ids(client) == [post["id"]]

def test_like_increments_counter(client, auth_headers):
    post = publish(client, auth_headers("U1")).json()["post"]

    first = client.post(f"/api/posts/{post['id']}/likes", headers=auth_headers("U2"))
    second = client.post(f"/api/posts/{post['id']}/likes", headers=auth_headers("U3"))

    assert first.json() == {"id": post["id"], "likes": 1}
    assert second.json() == {"id": post["id"], "likes": 2}
    assert client.get("/api/posts").json()["posts"][0]["likes"] == 2

def test_like_unknown_post(client, auth_headers):
    response = client.post("/api/posts/missing/likes", headers=auth_headers())

    assert response.status_code == 404

def test_flag_requires_moderator(client, auth_headers):
    post = publish(client, auth_headers("U1")).json()["post"]

    response = client.put(f"/api/posts/{post['id']}/flag", json={"flagged": True}, headers=auth_headers("U1"))

    assert response.status_code == 403
    assert post_ids(client) == [post["id"]]

def test_flagged_post_hidden_from_feed(client, auth_headers):
    post = publish(client, auth_headers("U1")).json()["post"]

    response = client.put(
        f"/api/posts/{post['id']}/flag",
        json={"flagged": True},
        headers=auth_headers("moderator"),
    )

    assert response.status_code == 200
    assert response.json()["post"]["flagged"] is True
    assert post_ids(client) == []

    client.put(f"/api/posts/{post['id']}/flag", json={"flagged": False}, headers=auth_headers("moderator"))
    assert post_ids(client) == [post["id"]]

def test_disallowed_origin_is_forbidden(client):
    response = client.get("/api/posts", headers={"Origin": "http://evil.example"})

    assert response.status_code == 403

def test_allowed_origin_gets_cors_headers(client):
    response = client.get("/api/posts", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
