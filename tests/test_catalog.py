"""Tests for products, accounts and service endpoints."""

from datetime import datetime
import logging

from bson import ObjectId
import pytest

from main import app, get_reset_sender

NEW_PRODUCT = {
    "name": "Physics Notes",
    "subjectName": "Physics I",
    "subjectCode": "PHYS101",
    "price": 12.5,
    "image": "https://cdn.example.com/img/physics.jpg",
    "description": "Mechanics and waves",
    "type": " Notes ",
    "pdfLink": "https://cdn.example.com/docs/physics.pdf",
}


class TestProducts:
    def test_list_and_get(self, client, exam_id, notes_id):
        listed = client.get("/api/products").json()
        assert {p["id"] for p in listed} == {exam_id, notes_id}

        product = client.get(f"/api/products/{exam_id}").json()
        assert product["name"] == "Calculus Final"
        assert product["ratings"] == 0
        assert product["numberOfReviews"] == 0

    def test_filter_by_type(self, client, exam_id, notes_id):
        listed = client.get("/api/products", params={"type": "notes"}).json()

        assert [p["id"] for p in listed] == [notes_id]

    def test_search_by_name(self, client, exam_id, notes_id):
        listed = client.get("/api/products", params={"q": "final"}).json()

        assert [p["id"] for p in listed] == [exam_id]

    def test_get_unknown(self, client):
        assert client.get(f"/api/products/{ObjectId()}").status_code == 404

    def test_get_malformed_id(self, client):
        response = client.get("/api/products/nope")

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid id"

    def test_admin_creates_product(self, client, admin_headers):
        response = client.post("/api/products", json=NEW_PRODUCT, headers=admin_headers)

        assert response.status_code == 201, response.text
        product = response.json()
        assert product["type"] == "notes"
        assert product["ratings"] == 0
        assert product["numberOfReviews"] == 0

    def test_create_ignores_client_aggregates(self, client, admin_headers):
        body = dict(NEW_PRODUCT, ratings=5, numberOfReviews=100)

        product = client.post("/api/products", json=body, headers=admin_headers).json()

        assert product["ratings"] == 0
        assert product["numberOfReviews"] == 0

    @pytest.mark.parametrize("field,value", [
        ("price", -1),
        ("type", "video"),
        ("image", "https://cdn.example.com/img/physics.bmp"),
        ("pdfLink", "ftp://cdn.example.com/docs/physics.pdf"),
        ("name", ""),
    ])
    def test_create_validation(self, client, admin_headers, field, value):
        body = dict(NEW_PRODUCT, **{field: value})

        response = client.post("/api/products", json=body, headers=admin_headers)

        assert response.status_code == 422

    def test_create_requires_admin(self, client, user_headers):
        response = client.post("/api/products", json=NEW_PRODUCT, headers=user_headers)

        assert response.status_code == 403

    def test_update_partial(self, client, admin_headers, exam_id):
        response = client.put(f"/api/products/{exam_id}", json={"price": 25}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["price"] == 25
        assert response.json()["name"] == "Calculus Final"

    def test_update_unknown(self, client, admin_headers):
        response = client.put(f"/api/products/{ObjectId()}", json={"price": 25}, headers=admin_headers)

        assert response.status_code == 404

    def test_delete_removes_reviews(self, client, db, admin_headers, user_headers, exam_id):
        client.post("/api/reviews", json={"product": exam_id, "rating": 5, "comment": "ok"}, headers=user_headers)

        response = client.delete(f"/api/products/{exam_id}", headers=admin_headers)

        assert response.status_code == 200
        assert db["product"].count_documents({}) == 0
        assert db["review"].count_documents({}) == 0


class TestAccounts:
    def test_register_and_login(self, client):
        response = client.post("/api/auth/register",
                               json={"name": "New", "email": "New@Example.com", "password": "hunter22"})
        assert response.status_code == 201
        assert response.json()["email"] == "new@example.com"

        login = client.post("/api/auth/login", json={"email": "new@example.com", "password": "hunter22"})
        assert login.status_code == 200
        token = login.json()["access_token"]

        me = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json()["name"] == "New"
        assert me.json()["isAdmin"] is False

    def test_registration_is_logged_with_arguments(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="main"):
            user_id = client.post("/api/auth/register",
                                  json={"name": "New", "email": "new@example.com", "password": "hunter22"}).json()["id"]

        record = next(r for r in caplog.records if r.name == "main" and r.msg == "Registered user %s")
        assert record.args == (user_id,)
        assert record.getMessage() == f"Registered user {user_id}"

    def test_register_duplicate_email(self, client, user):
        response = client.post("/api/auth/register",
                               json={"name": "Again", "email": "jane@example.com", "password": "hunter22"})

        assert response.status_code == 400

    def test_login_wrong_password(self, client, user):
        response = client.post("/api/auth/login", json={"email": "jane@example.com", "password": "wrong-one"})

        assert response.status_code == 400

    def test_bad_token(self, client):
        response = client.get("/api/users/me", headers={"Authorization": "Bearer abc.def.ghi"})

        assert response.status_code == 401

    def test_update_profile(self, client, user_headers):
        response = client.put("/api/users/me", json={"name": "Jane Q"}, headers=user_headers)

        assert response.status_code == 200
        assert response.json()["name"] == "Jane Q"


class TestPasswordReset:
    @pytest.fixture
    def reset_links(self, client):
        """Captures the reset links the API would have mailed."""
        sent = []
        app.dependency_overrides[get_reset_sender] = lambda: lambda email, url: sent.append((email, url))
        return sent

    def _request_token(self, client, reset_links):
        response = client.post("/api/auth/forgotpassword", json={"email": "Jane@Example.com", "role": "user"})
        assert response.status_code == 200
        email, url = reset_links[-1]
        assert email == "jane@example.com"
        return url.rsplit("/", 1)[1]

    def test_reset_password(self, client, db, user, reset_links):
        token = self._request_token(client, reset_links)
        stored = db["user"].find_one({"_id": user["_id"]})
        assert stored["reset_password_token"] != token

        response = client.put(f"/api/auth/resetpassword/{token}", json={"password": "newpass99"})

        assert response.status_code == 200, response.text
        assert response.json()["user"]["email"] == "jane@example.com"
        assert client.post("/api/auth/login", json={"email": "jane@example.com", "password": "newpass99"}).status_code == 200
        assert client.post("/api/auth/login", json={"email": "jane@example.com", "password": "secret123"}).status_code == 400
        stored = db["user"].find_one({"_id": user["_id"]})
        assert "reset_password_token" not in stored
        assert "reset_password_expire" not in stored

    def test_token_is_single_use(self, client, user, reset_links):
        token = self._request_token(client, reset_links)
        assert client.put(f"/api/auth/resetpassword/{token}", json={"password": "newpass99"}).status_code == 200

        response = client.put(f"/api/auth/resetpassword/{token}", json={"password": "another99"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid or expired reset token"
        assert client.post("/api/auth/login", json={"email": "jane@example.com", "password": "newpass99"}).status_code == 200

    def test_expired_token(self, client, db, user, reset_links):
        token = self._request_token(client, reset_links)
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"reset_password_expire": datetime(2000, 1, 1)}})

        response = client.put(f"/api/auth/resetpassword/{token}", json={"password": "newpass99"})

        assert response.status_code == 400
        assert client.post("/api/auth/login", json={"email": "jane@example.com", "password": "secret123"}).status_code == 200

    def test_unknown_token(self, client, user, reset_links):
        self._request_token(client, reset_links)

        response = client.put("/api/auth/resetpassword/not-a-real-token", json={"password": "newpass99"})

        assert response.status_code == 400

    def test_unknown_email_gets_same_answer(self, client, user, reset_links):
        known = client.post("/api/auth/forgotpassword", json={"email": "jane@example.com"})
        unknown = client.post("/api/auth/forgotpassword", json={"email": "nobody@example.com"})

        assert unknown.status_code == 200
        assert unknown.json() == known.json()
        assert [email for email, _ in reset_links] == ["jane@example.com"]

    def test_new_password_validated(self, client, user, reset_links):
        token = self._request_token(client, reset_links)

        response = client.put(f"/api/auth/resetpassword/{token}", json={"password": "abc"})

        assert response.status_code == 422


class TestService:
    def test_root(self, client):
        assert client.get("/").status_code == 200

    def test_seed_is_idempotent(self, client, db):
        first = client.post("/seed/init").json()
        second = client.post("/seed/init").json()

        assert first["inserted"] == 3
        assert second["inserted"] == 0
        assert db["user"].count_documents({"is_admin": True}) == 1
