"""
Tests for authentication and account deletion endpoints
"""
from truck_command.auth import get_password_hash, verify_password
from truck_command.db import User, Load, Subscription
from conftest import headers_for


class TestPasswordHashing:

    def test_hash_round_trip(self):
        hashed = get_password_hash("correct horse")
        assert hashed.startswith("$2")
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)

    def test_long_password_is_prehashed(self):
        """Passwords past bcrypt's 72 bytes still distinguish their tails"""
        base = "x" * 80
        hashed = get_password_hash(base + "a")
        assert verify_password(base + "a", hashed)
        assert not verify_password(base + "b", hashed)

    def test_non_bcrypt_hash_rejected(self):
        assert not verify_password("secret", "plain-text-secret")
        assert not verify_password("", get_password_hash("secret"))


class TestSignupLogin:

    def test_signup_returns_token(self, client, db_session):
        response = client.post("/api/auth/signup", json={
            "email": "new@example.com",
            "password": "longenough1",
            "full_name": "New Driver",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == "new@example.com"
        assert db_session.query(User).filter(User.email == "new@example.com").count() == 1

    def test_duplicate_email_rejected(self, client, test_user):
        response = client.post("/api/auth/signup", json={"email": test_user.email, "password": "longenough1"})
        assert response.status_code == 400
        assert response.json()["error"] == "Email already registered"

    def test_short_password_rejected(self, client):
        response = client.post("/api/auth/signup", json={"email": "short@example.com", "password": "abc"})
        assert response.status_code == 400

    def test_login(self, client, test_user):
        response = client.post("/api/auth/login", data={"username": test_user.email, "password": "testpassword123"})
        assert response.status_code == 200
        token = response.json()["access_token"]

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["id"] == test_user.id

    def test_login_wrong_password(self, client, test_user):
        response = client.post("/api/auth/login", data={"username": test_user.email, "password": "nope"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_ERROR"

    def test_invalid_token(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401


class TestDeleteAccount:

    def test_requires_confirmation(self, client, auth_headers):
        response = client.post("/api/auth/delete-account", json={"confirmation": "yes"}, headers=auth_headers)
        assert response.status_code == 400
        assert "delete my account" in response.json()["error"]

    def test_deletes_user_data_and_cancels_stripe(self, client, db_session, premium_user, billing_gateway):
        headers = headers_for(premium_user)
        user_id = premium_user.id
        client.post("/api/loads", json={"origin": "Dallas, TX", "destination": "Tulsa, OK", "rate": 900},
                    headers=headers)

        response = client.post("/api/auth/delete-account", json={"confirmation": "delete my account"},
                               headers=headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert ("cancel_subscription", f"sub_{user_id[:8]}") in billing_gateway.calls
        assert db_session.query(User).filter(User.id == user_id).count() == 0
        assert db_session.query(Load).filter(Load.user_id == user_id).count() == 0
        assert db_session.query(Subscription).filter(Subscription.user_id == user_id).count() == 0
