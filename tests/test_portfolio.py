from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from database import PORTFOLIO, to_object_id
from main import create_app
from storage import S3MediaStorage
from tests.conftest import PNG_BYTES


@pytest.fixture
def create_item(client):
    def _create(actor, category="Plumbing", featured=False, images=1):
        data = {
            "title": f"{category} job",
            "description": "Replaced the whole stack",
            "category": category,
            "skills": "pipes, soldering ,",
            "experience": "4",
            "featured": "true" if featured else "false",
        }
        files = [("images", (f"photo{i}.png", PNG_BYTES, "image/png")) for i in range(images)]
        response = client.post("/portfolio", data=data, files=files, headers=actor.headers)
        assert response.status_code == 201, response.text
        return response.json()["data"]

    return _create


class TestCreate:
    def test_multipart_create(self, create_item, provider, storage):
        item = create_item(provider, images=2)
        assert item["skills"] == ["pipes", "soldering"]
        assert item["experience"] == 4
        assert item["is_active"] is True
        assert len(item["images"]) == 2
        for image in item["images"]:
            assert image["storage_id"].startswith(f"portfolio/{provider.id}/")
            assert (storage.root / image["storage_id"]).exists()

    def test_needs_an_image(self, client, provider):
        response = client.post(
            "/portfolio",
            json={"title": "Kitchen", "description": "Tiles", "category": "Home"},
            headers=provider.headers,
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Please upload at least one image"

    def test_accepts_pre_uploaded_refs(self, client, provider):
        ref = {"url": "https://cdn.example.com/a.png", "storage_id": f"portfolio/{provider.id}/a.png"}
        response = client.post(
            "/portfolio",
            json={"title": "Kitchen", "description": "Tiles", "category": "Home", "images": [ref], "skills": ["tiling"]},
            headers=provider.headers,
        )
        assert response.status_code == 201
        assert response.json()["data"]["images"] == [ref]

    def test_rejects_someone_elses_media(self, client, provider, signup):
        other = signup("provider")
        ref = {"url": "https://cdn.example.com/a.png", "storage_id": f"portfolio/{other.id}/a.png"}
        response = client.post(
            "/portfolio",
            json={"title": "Kitchen", "description": "Tiles", "category": "Home", "images": [ref]},
            headers=provider.headers,
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Media reference does not belong to this provider"

    def test_resume_may_be_a_pdf(self, client, provider):
        response = client.post(
            "/portfolio",
            data={"title": "CV", "description": "Experience", "category": "Home"},
            files=[
                ("images", ("photo.jpg", PNG_BYTES, "image/jpeg")),
                ("resume", ("cv.pdf", b"%PDF-1.4", "application/pdf")),
            ],
            headers=provider.headers,
        )
        assert response.status_code == 201, response.text
        assert response.json()["data"]["resume"]["url"].endswith(".pdf")

    def test_too_many_images(self, client, provider):
        files = [("images", (f"p{i}.png", PNG_BYTES, "image/png")) for i in range(6)]
        response = client.post(
            "/portfolio",
            data={"title": "Lots", "description": "Many", "category": "Home"},
            files=files,
            headers=provider.headers,
        )
        assert response.status_code == 400

    def test_customers_cannot_create(self, client, customer):
        response = client.post("/portfolio", json={"title": "x"}, headers=customer.headers)
        assert response.status_code == 403


class TestReadAndCategories:
    def test_provider_portfolio_puts_featured_first(self, client, create_item, provider):
        create_item(provider, category="Plumbing")
        featured = create_item(provider, category="Cleaning", featured=True)
        create_item(provider, category="Plumbing")

        body = client.get(f"/portfolio/provider/{provider.id}").json()
        assert body["count"] == 3
        assert body["data"][0]["id"] == featured["id"]
        assert body["data"][0]["provider"]["name"] == provider.user["name"]

        assert client.get(f"/portfolio/provider/{provider.id}", params={"category": "Plumbing"}).json()["count"] == 2
        assert client.get(f"/portfolio/provider/{provider.id}", params={"featured": "true"}).json()["count"] == 1

    def test_categories_count_active_items(self, client, create_item, provider):
        create_item(provider, category="Plumbing")
        create_item(provider, category="Plumbing")
        gone = create_item(provider, category="Cleaning")
        create_item(provider, category="Painting")
        client.delete(f"/portfolio/{gone['id']}", headers=provider.headers)

        assert client.get("/portfolio/categories").json()["data"] == [
            {"category": "Painting", "count": 1},
            {"category": "Plumbing", "count": 2},
        ]

    def test_get_item(self, client, create_item, provider):
        item = create_item(provider)
        data = client.get(f"/portfolio/{item['id']}").json()["data"]
        assert data["title"] == "Plumbing job"
        assert data["provider"]["id"] == provider.id


class TestUpdateAndDelete:
    def test_new_images_replace_old_ones(self, client, create_item, provider, storage):
        item = create_item(provider)
        old = storage.root / item["images"][0]["storage_id"]

        response = client.put(
            f"/portfolio/{item['id']}",
            data={"title": "Renamed"},
            files=[("images", ("new.png", PNG_BYTES, "image/png"))],
            headers=provider.headers,
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["title"] == "Renamed"
        assert len(data["images"]) == 1
        assert (storage.root / data["images"][0]["storage_id"]).exists()
        assert not old.exists()

    def test_resent_images_are_kept(self, client, create_item, provider, storage):
        item = create_item(provider, images=2)
        kept, dropped = item["images"]
        extra = {"url": "https://cdn.example.com/extra.png", "storage_id": f"portfolio/{provider.id}/extra.png"}

        response = client.put(f"/portfolio/{item['id']}", json={"images": [kept, extra]}, headers=provider.headers)
        assert response.status_code == 200, response.text
        assert response.json()["data"]["images"] == [kept, extra]
        assert (storage.root / kept["storage_id"]).exists()
        assert not (storage.root / dropped["storage_id"]).exists()

    def test_resent_resume_is_kept(self, client, provider, storage):
        response = client.post(
            "/portfolio",
            data={"title": "CV", "description": "Experience", "category": "Home"},
            files=[
                ("images", ("photo.png", PNG_BYTES, "image/png")),
                ("resume", ("cv.pdf", b"%PDF-1.4", "application/pdf")),
            ],
            headers=provider.headers,
        )
        item = response.json()["data"]
        resume = item["resume"]

        response = client.put(f"/portfolio/{item['id']}", json={"title": "CV2", "resume": resume}, headers=provider.headers)
        assert response.status_code == 200, response.text
        assert response.json()["data"]["resume"] == resume
        assert (storage.root / resume["storage_id"]).exists()

        response = client.put(
            f"/portfolio/{item['id']}",
            files=[("resume", ("cv2.pdf", b"%PDF-1.5", "application/pdf"))],
            headers=provider.headers,
        )
        assert response.json()["data"]["resume"]["storage_id"] != resume["storage_id"]
        assert not (storage.root / resume["storage_id"]).exists()

    def test_plain_field_update_keeps_images(self, client, create_item, provider):
        item = create_item(provider)
        response = client.put(f"/portfolio/{item['id']}", json={"featured": True, "skills": "a,b"}, headers=provider.headers)
        data = response.json()["data"]
        assert data["featured"] is True
        assert data["skills"] == ["a", "b"]
        assert data["images"] == item["images"]

    def test_cannot_empty_the_images(self, client, create_item, provider):
        item = create_item(provider)
        response = client.put(f"/portfolio/{item['id']}", json={"images": []}, headers=provider.headers)
        assert response.status_code == 400

    def test_soft_delete(self, client, create_item, provider, storage, db):
        item = create_item(provider)
        path = storage.root / item["images"][0]["storage_id"]

        response = client.delete(f"/portfolio/{item['id']}", headers=provider.headers)
        assert response.status_code == 200
        doc = db[PORTFOLIO].find_one({"_id": to_object_id(item["id"])})
        assert doc is not None and doc["is_active"] is False
        assert not path.exists()

        assert client.get(f"/portfolio/{item['id']}").status_code == 404
        assert client.get("/portfolio/my-portfolio", headers=provider.headers).json()["count"] == 0
        assert client.delete(f"/portfolio/{item['id']}", headers=provider.headers).status_code == 404

    def test_only_the_owner(self, client, create_item, provider, signup):
        item = create_item(provider)
        other = signup("provider")
        assert client.put(f"/portfolio/{item['id']}", json={"title": "Mine"}, headers=other.headers).status_code == 403
        assert client.delete(f"/portfolio/{item['id']}", headers=other.headers).status_code == 403


class TestSignUpload:
    def test_unavailable_on_local_storage(self, client, provider):
        response = client.post("/portfolio/sign-upload", headers=provider.headers)
        assert response.status_code == 400
        assert response.json()["message"] == "Direct uploads are not available for this deployment"

    def test_signs_into_the_providers_folder(self, settings, db):
        s3 = MagicMock()
        s3.generate_presigned_post.return_value = {"url": "https://bucket.example.com", "fields": {"policy": "p"}}
        app = create_app(settings, db=db, storage=S3MediaStorage(s3, "media", "https://cdn.example.com"))
        client = TestClient(app)

        body = client.post(
            "/auth/signup",
            json={"name": "Pat", "email": "pat@example.com", "password": "secret123", "role": "provider"},
        ).json()["data"]
        headers = {"Authorization": f"Bearer {body['token']}"}
        provider_id = body["user"]["id"]

        response = client.post("/portfolio/sign-upload", json={"folder": "../kitchen"}, headers=headers)
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["key"].startswith(f"portfolio/{provider_id}/kitchen/")
        assert data["public_url"] == f"https://cdn.example.com/{data['key']}"
        assert data["fields"] == {"policy": "p"}
        kwargs = s3.generate_presigned_post.call_args.kwargs
        assert kwargs["Bucket"] == "media"
        assert kwargs["ExpiresIn"] == settings.upload_signature_expires

    def test_resume_signing_is_pdf_only(self, settings, db):
        s3 = MagicMock()
        s3.generate_presigned_post.return_value = {"url": "https://bucket.example.com", "fields": {"policy": "p"}}
        client = TestClient(create_app(settings, db=db, storage=S3MediaStorage(s3, "media", "https://cdn.example.com")))
        body = client.post(
            "/auth/signup",
            json={"name": "Sam", "email": "sam@example.com", "password": "secret123", "role": "provider"},
        ).json()["data"]
        headers = {"Authorization": f"Bearer {body['token']}"}

        response = client.post("/portfolio/sign-upload", json={"resume": True}, headers=headers)
        assert response.status_code == 200, response.text
        assert response.json()["data"]["key"].endswith(".pdf")
        kwargs = s3.generate_presigned_post.call_args.kwargs
        assert kwargs["Fields"] == {"Content-Type": "application/pdf"}
        assert kwargs["Conditions"] == [{"Content-Type": "application/pdf"}]

        client.post("/portfolio/sign-upload", json={}, headers=headers)
        assert s3.generate_presigned_post.call_args.kwargs["Conditions"] == [["starts-with", "$Content-Type", "image/"]]
