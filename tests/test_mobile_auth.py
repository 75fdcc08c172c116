"""
Tests for mobile device registration and authentication.

Covers:
  - Device pre-registration (credential returned once, stored encrypted)
  - Account registration and its two conflict codes
  - Email-code login: dev code outside production, one attempt per challenge
  - Refresh token rotation and reuse detection
  - Logout for one device or all of them
  - Access token checks on protected endpoints
"""

from sqlalchemy import select

from conftest import register_mobile_user
from wsim.models.device import MobileDevice, MobileRefreshToken
from wsim.services import token_service

LOGIN_DEVICE = {"device_id": "device-9", "device_name": "New Phone", "platform": "android"}


async def login(client, email: str, device: dict = LOGIN_DEVICE):
    """Request a code and verify it; returns the verify response."""
    challenge = await client.post(
        "/api/mobile/auth/login", json={"email": email, "device_id": device["device_id"]}
    )
    assert challenge.status_code == 200, challenge.text
    data = challenge.json()
    return await client.post(
        "/api/mobile/auth/login/verify",
        json={"challenge": data["challenge"], "code": data["dev_code"], **device},
    )


class TestDeviceRegistration:

    async def test_register_new_device(self, client, db_session):
        response = await client.post("/api/mobile/device/register", json={
            "device_id": "device-7",
            "platform": "ios",
            "device_name": "Alice's iPhone",
            "push_token": "expo-token",
            "push_token_type": "expo",
        })
        assert response.status_code == 200
        credential = response.json()["device_credential"]
        assert len(credential) == 64

        device = (await db_session.execute(select(MobileDevice))).scalar_one()
        assert device.user_id is None
        assert device.device_credential != credential
        assert device.push_token_active is True

    async def test_re_register_returns_same_credential(self, client):
        body = {"device_id": "device-7", "platform": "ios", "device_name": "Phone"}
        first = await client.post("/api/mobile/device/register", json=body)
        second = await client.post(
            "/api/mobile/device/register", json={**body, "device_name": "Renamed"}
        )
        assert first.json()["device_credential"] == second.json()["device_credential"]

    async def test_invalid_platform(self, client):
        response = await client.post("/api/mobile/device/register", json={
            "device_id": "device-7", "platform": "windows", "device_name": "PC",
        })
        assert response.status_code == 400
        assert response.json()["error"] == "bad_request"


class TestRegisterAccount:

    async def test_register(self, client, db_session):
        response = await client.post("/api/mobile/auth/register", json={
            "email": "New.User@Example.com",
            "name": "Ada King Lovelace",
            "device_id": "device-1",
            "device_name": "Phone",
            "platform": "ios",
        })
        assert response.status_code == 201
        data = response.json()
        assert data["user"]["email"] == "new.user@example.com"
        assert data["user"]["name"] == "Ada King Lovelace"
        assert data["tokens"]["expires_in"] == 3600

        device = (await db_session.execute(select(MobileDevice))).scalar_one()
        assert str(device.user_id) == data["user"]["id"]

    async def test_duplicate_email(self, client, mobile_user):
        response = await client.post("/api/mobile/auth/register", json={
            "email": mobile_user.email,
            "name": "Someone",
            "device_id": "device-new",
            "device_name": "Phone",
            "platform": "ios",
        })
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    async def test_device_already_bound(self, client, mobile_user):
        response = await client.post("/api/mobile/auth/register", json={
            "email": "fresh@example.com",
            "name": "Someone",
            "device_id": mobile_user.device_id,
            "device_name": "Phone",
            "platform": "ios",
        })
        assert response.status_code == 409
        assert response.json()["error"] == "device_conflict"

    async def test_pre_registered_device_can_register(self, client):
        await client.post("/api/mobile/device/register", json={
            "device_id": "device-5", "platform": "android", "device_name": "Pixel",
        })
        user = await register_mobile_user(client, "pre@example.com", "device-5")
        assert user.access_token


class TestEmailCodeLogin:

    async def test_login_and_verify(self, client, mobile_user):
        response = await login(client, mobile_user.email)
        assert response.status_code == 200
        data = response.json()
        assert data["user"]["id"] == str(mobile_user.id)
        assert data["tokens"]["access_token"]

        # The new device is bound and can call protected endpoints
        me = await client.get(
            "/api/mobile/enrollment/list",
            headers={"Authorization": f"Bearer {data['tokens']['access_token']}"},
        )
        assert me.status_code == 200

    async def test_unknown_email(self, client):
        response = await client.post(
            "/api/mobile/auth/login", json={"email": "nobody@example.com", "device_id": "d"}
        )
        assert response.status_code == 404

    async def test_wrong_code_consumes_challenge(self, client, mobile_user):
        challenge = (await client.post(
            "/api/mobile/auth/login",
            json={"email": mobile_user.email, "device_id": "device-9"},
        )).json()
        wrong = "000000" if challenge["dev_code"] != "000000" else "111111"

        first = await client.post("/api/mobile/auth/login/verify", json={
            "challenge": challenge["challenge"], "code": wrong, **LOGIN_DEVICE,
        })
        assert first.status_code == 401

        # Even the right code fails now: one attempt per challenge
        second = await client.post("/api/mobile/auth/login/verify", json={
            "challenge": challenge["challenge"], "code": challenge["dev_code"], **LOGIN_DEVICE,
        })
        assert second.status_code == 401
        assert second.json()["message"] == "Invalid or expired challenge"

    async def test_login_rebinds_device(self, client, db_session, mobile_user, second_mobile_user):
        device = {
            "device_id": second_mobile_user.device_id,
            "device_name": "Shared Phone",
            "platform": "ios",
        }
        response = await login(client, mobile_user.email, device)
        assert response.status_code == 200

        bound = (await db_session.execute(
            select(MobileDevice).where(MobileDevice.device_id == second_mobile_user.device_id)
        )).scalar_one()
        assert bound.user_id == mobile_user.id


class TestRefreshTokens:

    async def test_rotation(self, client, mobile_user):
        response = await client.post(
            "/api/mobile/auth/token/refresh", json={"refresh_token": mobile_user.refresh_token}
        )
        assert response.status_code == 200
        tokens = response.json()
        assert tokens["refresh_token"] != mobile_user.refresh_token

        again = await client.post(
            "/api/mobile/auth/token/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert again.status_code == 200

    async def test_reuse_revokes_the_device_family(self, client, db_session, mobile_user):
        rotated = (await client.post(
            "/api/mobile/auth/token/refresh", json={"refresh_token": mobile_user.refresh_token}
        )).json()

        # The old token comes back: treated as theft
        reuse = await client.post(
            "/api/mobile/auth/token/refresh", json={"refresh_token": mobile_user.refresh_token}
        )
        assert reuse.status_code == 401

        # ...and the legitimate successor died with it
        successor = await client.post(
            "/api/mobile/auth/token/refresh", json={"refresh_token": rotated["refresh_token"]}
        )
        assert successor.status_code == 401

        records = (await db_session.execute(select(MobileRefreshToken))).scalars().all()
        assert records
        assert all(r.revoked_at is not None for r in records)

    async def test_garbage_token(self, client):
        response = await client.post(
            "/api/mobile/auth/token/refresh", json={"refresh_token": "not-a-jwt"}
        )
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    async def test_access_token_is_not_a_refresh_token(self, client, mobile_user):
        response = await client.post(
            "/api/mobile/auth/token/refresh", json={"refresh_token": mobile_user.access_token}
        )
        assert response.status_code == 401


class TestLogout:

    async def test_logout_this_device(self, client, mobile_user, db_session):
        await login(client, mobile_user.email)

        response = await client.post("/api/mobile/auth/logout", headers=mobile_user.headers)
        assert response.status_code == 200
        assert response.json() == {"success": True, "revoked_tokens": 1}

        # The other device's token survives
        live = (await db_session.execute(
            select(MobileRefreshToken).where(MobileRefreshToken.revoked_at.is_(None))
        )).scalars().all()
        assert [r.device_id for r in live] == ["device-9"]

    async def test_logout_all_devices(self, client, mobile_user):
        await login(client, mobile_user.email)
        response = await client.post(
            "/api/mobile/auth/logout",
            params={"revoke_all": "true"},
            headers=mobile_user.headers,
        )
        assert response.json()["revoked_tokens"] == 2

        refresh = await client.post(
            "/api/mobile/auth/token/refresh", json={"refresh_token": mobile_user.refresh_token}
        )
        assert refresh.status_code == 401

    async def test_logout_deactivates_push(self, client, mobile_user, db_session):
        await client.post("/api/mobile/auth/logout", headers=mobile_user.headers)
        device = (await db_session.execute(
            select(MobileDevice).where(MobileDevice.device_id == mobile_user.device_id)
        )).scalar_one()
        assert device.push_token_active is False


class TestAccessTokens:

    async def test_missing_header(self, client):
        response = await client.get("/api/mobile/enrollment/list")
        assert response.status_code == 401
        assert response.json()["message"] == "Missing or invalid authorization header"
        assert response.headers["www-authenticate"] == "Bearer"

    async def test_refresh_token_rejected_as_access_token(self, client, mobile_user):
        response = await client.get(
            "/api/mobile/enrollment/list",
            headers={"Authorization": f"Bearer {mobile_user.refresh_token}"},
        )
        assert response.status_code == 401

    def test_access_token_claims(self):
        token = token_service.create_access_token(
            "6f1c5b2e-1111-4222-8333-944445555666", "device-1"
        )
        claims = token_service.decode_mobile_token(token)
        assert claims["iss"] == "http://localhost:3003"
        assert claims["aud"] == "mwsim"
        assert claims["deviceId"] == "device-1"
        assert claims["type"] == "access"
