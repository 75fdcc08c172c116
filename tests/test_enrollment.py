"""
Tests for bank enrollment over OIDC, web and mobile.

The bank side is FakeBank: tests call bank.authorize() with the auth URL
the API returned (what the user's browser would do), then hit the callback
with the code and state the bank would send back.

Covers:
  - Bank list and start (auth URL, correlation cookie, unknown bank)
  - Full web flow: user created from the ID token, cards synced, session set
  - Callback failures in their fixed precedence order
  - Re-enrollment updates instead of duplicating
  - Card sync failure is not fatal
  - Password chosen at start enables password login
  - Mobile flow: bank and state as correlation id, deep-link responses
  - Listing and deleting enrollments (ownership, card removal)
"""

from urllib.parse import parse_qsl, urlsplit

from sqlalchemy import select

from conftest import add_cards
from wsim.models.card import WalletCard
from wsim.models.enrollment import BsimEnrollment
from wsim.models.user import WalletUser


async def start_web(client, password=None):
    body = {"password": password} if password else None
    response = await client.post("/api/enrollment/start/test-bank", json=body)
    assert response.status_code == 200, response.text
    return response


async def enroll_web(client, bank, password=None):
    """Run the whole browser flow and return the callback response."""
    start = await start_web(client, password)
    code, state = bank.authorize(start.json()["auth_url"])
    return await client.get(
        "/api/enrollment/callback/test-bank",
        params={"code": code, "state": state},
    )


async def password_login(client, password):
    return await client.post(
        "/api/auth/login",
        json={"email": "alice@example.com", "password": password},
    )


def redirect_params(response) -> tuple[str, dict]:
    location = urlsplit(response.headers["location"])
    base = f"{location.scheme}://{location.netloc}{location.path}"
    return base, dict(parse_qsl(location.query))


class TestBanks:

    async def test_list_banks(self, client):
        response = await client.get("/api/enrollment/banks")
        assert response.status_code == 200
        assert response.json()["banks"] == [{
            "bsim_id": "test-bank",
            "name": "Test Bank",
            "logo_url": "https://testbank.ca/logo.png",
        }]

    async def test_mobile_list_banks(self, client):
        response = await client.get("/api/mobile/enrollment/banks")
        assert response.status_code == 200
        assert [b["bsim_id"] for b in response.json()["banks"]] == ["test-bank"]


class TestWebStart:

    async def test_start_returns_auth_url_and_cookie(self, client):
        response = await start_web(client)
        data = response.json()
        assert data["bsim_id"] == "test-bank"
        assert data["bank_name"] == "Test Bank"

        params = dict(parse_qsl(urlsplit(data["auth_url"]).query))
        assert params["redirect_uri"] == "http://localhost:3003/api/enrollment/callback/test-bank"
        assert params["code_challenge_method"] == "S256"
        assert "wsim_enrollment" in response.cookies

    async def test_start_unknown_bank(self, client):
        response = await client.post("/api/enrollment/start/no-such-bank")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestWebCallback:

    async def test_successful_enrollment(self, client, bank, db_session):
        response = await enroll_web(client, bank)

        assert response.status_code == 302
        base, params = redirect_params(response)
        assert base == "http://localhost:3004/wallet"
        assert params == {"enrolled": "test-bank"}

        # The callback signed the browser in
        me = await client.get("/api/auth/me")
        assert me.status_code == 200
        assert me.json()["email"] == "alice@example.com"
        assert me.json()["first_name"] == "Alice"
        assert me.json()["wallet_id"].startswith("wallet_")

        cards = (await client.get("/api/wallet/cards")).json()["cards"]
        assert sorted(c["last_four"] for c in cards) == ["4242", "5555"]
        assert all(c["bsim_id"] == "test-bank" for c in cards)

        enrollment = (await db_session.execute(select(BsimEnrollment))).scalar_one()
        assert enrollment.fi_user_ref == "fi-user-1"
        # Credentials are stored encrypted
        assert enrollment.wallet_credential != "bank-wallet-credential"
        assert enrollment.refresh_token != "bank-refresh-token"
        assert enrollment.credential_expiry is not None

    async def test_email_is_normalized(self, client, bank, db_session):
        bank.email = "Alice@Example.COM"
        await enroll_web(client, bank)
        user = (await db_session.execute(select(WalletUser))).scalar_one()
        assert user.email == "alice@example.com"

    async def test_bank_error_passed_through(self, client):
        response = await client.get(
            "/api/enrollment/callback/test-bank",
            params={"error": "access_denied", "error_description": "User denied access"},
        )
        assert response.status_code == 302
        base, params = redirect_params(response)
        assert base == "http://localhost:3004/enroll"
        assert params == {"error": "access_denied", "message": "User denied access"}

    async def test_missing_code(self, client):
        await start_web(client)
        response = await client.get("/api/enrollment/callback/test-bank", params={"state": "x"})
        assert redirect_params(response)[1]["error"] == "missing_code"

    async def test_no_enrollment_session(self, client):
        response = await client.get(
            "/api/enrollment/callback/test-bank",
            params={"code": "abc", "state": "xyz"},
        )
        assert redirect_params(response)[1]["error"] == "invalid_session"

    async def test_state_mismatch(self, client, bank):
        start = await start_web(client)
        code, _ = bank.authorize(start.json()["auth_url"])
        response = await client.get(
            "/api/enrollment/callback/test-bank",
            params={"code": code, "state": "forged-state"},
        )
        assert redirect_params(response)[1]["error"] == "invalid_state"

    async def test_state_is_single_use(self, client, bank):
        """A failed callback consumes the enrollment state; a retry is a new session."""
        start = await start_web(client)
        cookie = start.cookies["wsim_enrollment"]
        code, state = bank.authorize(start.json()["auth_url"])

        await client.get(
            "/api/enrollment/callback/test-bank",
            params={"code": code, "state": "forged-state"},
        )
        client.cookies.set("wsim_enrollment", cookie)
        response = await client.get(
            "/api/enrollment/callback/test-bank",
            params={"code": code, "state": state},
        )
        assert redirect_params(response)[1]["error"] == "invalid_session"

    async def test_bank_mismatch(self, client, bank):
        start = await start_web(client)
        code, state = bank.authorize(start.json()["auth_url"])
        response = await client.get(
            "/api/enrollment/callback/other-bank",
            params={"code": code, "state": state},
        )
        assert redirect_params(response)[1]["error"] == "invalid_bsim"

    async def test_wrong_bank_callback_keeps_session(self, client, bank):
        start = await start_web(client)
        code, state = bank.authorize(start.json()["auth_url"])

        wrong = await client.get(
            "/api/enrollment/callback/other-bank",
            params={"code": code, "state": state},
        )
        assert redirect_params(wrong)[1]["error"] == "invalid_bsim"
        assert "wsim_enrollment=" not in wrong.headers.get("set-cookie", "")

        response = await client.get(
            "/api/enrollment/callback/test-bank",
            params={"code": code, "state": state},
        )
        assert redirect_params(response) == (
            "http://localhost:3004/wallet",
            {"enrolled": "test-bank"},
        )

    async def test_token_exchange_failure(self, client, bank, db_session):
        bank.token_status = 400
        response = await enroll_web(client, bank)

        base, params = redirect_params(response)
        assert base == "http://localhost:3004/enroll"
        assert params["error"] == "callback_failed"
        assert "400" in params["message"]
        assert (await db_session.execute(select(WalletUser))).first() is None

    async def test_card_sync_failure_is_not_fatal(self, client, bank):
        bank.cards_status = 500
        response = await enroll_web(client, bank)

        base, _ = redirect_params(response)
        assert base == "http://localhost:3004/wallet"
        assert (await client.get("/api/wallet/cards")).json()["cards"] == []

    async def test_re_enrollment_updates_in_place(self, client, bank, db_session):
        await enroll_web(client, bank)
        bank.cards[0]["lastFour"] = "1111"
        await enroll_web(client, bank)

        enrollments = (await db_session.execute(select(BsimEnrollment))).scalars().all()
        cards = (await db_session.execute(select(WalletCard))).scalars().all()
        assert len(enrollments) == 1
        assert len(cards) == 2
        assert sorted(c.last_four for c in cards) == ["1111", "5555"]

    async def test_duplicate_card_refs_from_bank(self, client, bank, db_session):
        bank.cards.append(dict(bank.cards[0], lastFour="9999"))
        response = await enroll_web(client, bank)

        assert redirect_params(response)[0] == "http://localhost:3004/wallet"
        rows = (await db_session.execute(
            select(WalletCard.bsim_card_ref, WalletCard.last_four)
        )).all()
        assert sorted(rows) == [("card-1", "9999"), ("card-2", "5555")]


class TestPasswordFromEnrollment:

    async def test_password_enables_login(self, client, bank):
        await enroll_web(client, bank, password="correct-horse")
        await client.post("/api/auth/logout")
        client.cookies.clear()

        response = await client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "correct-horse"},
        )
        assert response.status_code == 200
        assert response.json()["user"]["email"] == "alice@example.com"
        assert "wsim_session" in response.cookies

    async def test_short_password_is_ignored(self, client, bank, db_session):
        await enroll_web(client, bank, password="short")
        user = (await db_session.execute(select(WalletUser))).scalar_one()
        assert user.password_hash is None

    async def test_wrong_password(self, client, bank):
        await enroll_web(client, bank, password="correct-horse")
        response = await client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "wrong-horse"},
        )
        assert response.status_code == 401
        assert response.json() == {
            "error": "unauthorized",
            "message": "Invalid email or password",
        }

    async def test_bank_only_user_cannot_password_login(self, client, bank):
        await enroll_web(client, bank)
        response = await client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "anything-at-all"},
        )
        assert response.status_code == 401

    async def test_re_enrollment_keeps_existing_password(self, client, bank):
        await enroll_web(client, bank, password="correct-horse")
        await enroll_web(client, bank, password="another-password")
        client.cookies.clear()

        assert (await password_login(client, "correct-horse")).status_code == 200
        assert (await password_login(client, "another-password")).status_code == 401

    async def test_password_is_set_once_for_bank_only_user(self, client, bank):
        await enroll_web(client, bank)
        await enroll_web(client, bank, password="first-password")
        await enroll_web(client, bank, password="second-password")
        client.cookies.clear()

        assert (await password_login(client, "first-password")).status_code == 200
        assert (await password_login(client, "second-password")).status_code == 401


class TestMobileEnrollment:

    async def test_start_requires_auth(self, client):
        response = await client.post("/api/mobile/enrollment/start/test-bank")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    async def test_full_mobile_flow(self, client, bank, mobile_user):
        start = await client.post(
            "/api/mobile/enrollment/start/test-bank", headers=mobile_user.headers
        )
        assert start.status_code == 200
        data = start.json()
        assert data["callback_url_pattern"] == (
            "http://localhost:3003/api/mobile/enrollment/callback/test-bank"
        )

        code, state = bank.authorize(data["auth_url"])
        assert state == data["state"]

        response = await client.get(
            "/api/mobile/enrollment/callback/test-bank",
            params={"code": code, "state": state},
        )
        assert response.status_code == 302
        base, params = redirect_params(response)
        assert base == "mwsim://enrollment/callback"
        assert params == {
            "success": "true",
            "bsimId": "test-bank",
            "bankName": "Test Bank",
            "cardCount": "2",
        }

        # Cards belong to the signed-in mobile user, not to the bank's email
        listing = await client.get("/api/mobile/enrollment/list", headers=mobile_user.headers)
        enrollments = listing.json()["enrollments"]
        assert len(enrollments) == 1
        assert enrollments[0]["card_count"] == 2
        assert enrollments[0]["bank_name"] == "Test Bank"

    async def test_mobile_callback_failure_deep_links(self, client):
        response = await client.get(
            "/api/mobile/enrollment/callback/test-bank",
            params={"code": "abc", "state": "unknown-state"},
        )
        assert response.status_code == 302
        base, params = redirect_params(response)
        assert base == "mwsim://enrollment/callback"
        assert params == {"success": "false", "error": "invalid_state"}

    async def test_mobile_state_mismatch(self, client, bank, mobile_user):
        start = await client.post(
            "/api/mobile/enrollment/start/test-bank", headers=mobile_user.headers
        )
        code, _ = bank.authorize(start.json()["auth_url"])

        response = await client.get(
            "/api/mobile/enrollment/callback/test-bank",
            params={"code": code, "state": "forged-state"},
        )
        assert redirect_params(response) == (
            "mwsim://enrollment/callback",
            {"success": "false", "error": "invalid_state"},
        )

    async def test_mobile_wrong_bank_leaves_enrollment_pending(
        self, client, bank, mobile_user
    ):
        start = await client.post(
            "/api/mobile/enrollment/start/test-bank", headers=mobile_user.headers
        )
        code, state = bank.authorize(start.json()["auth_url"])

        wrong = await client.get(
            "/api/mobile/enrollment/callback/other-bank",
            params={"code": code, "state": state},
        )
        assert redirect_params(wrong)[1] == {"success": "false", "error": "invalid_state"}

        response = await client.get(
            "/api/mobile/enrollment/callback/test-bank",
            params={"code": code, "state": state},
        )
        assert redirect_params(response)[1]["success"] == "true"


class TestEnrollmentListAndDelete:

    async def test_delete_removes_cards(self, client, db_session, mobile_user):
        enrollment, _ = await add_cards(db_session, mobile_user.id, count=3)

        response = await client.delete(
            f"/api/mobile/enrollment/{enrollment.id}", headers=mobile_user.headers
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "cards_removed": 3}

        listing = await client.get("/api/mobile/enrollment/list", headers=mobile_user.headers)
        assert listing.json()["enrollments"] == []
        assert (await db_session.execute(select(WalletCard))).first() is None

    async def test_delete_someone_elses_enrollment(
        self, client, db_session, mobile_user, second_mobile_user
    ):
        enrollment, _ = await add_cards(db_session, second_mobile_user.id)
        response = await client.delete(
            f"/api/mobile/enrollment/{enrollment.id}", headers=mobile_user.headers
        )
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    async def test_delete_unknown_enrollment(self, client, mobile_user):
        response = await client.delete(
            "/api/mobile/enrollment/00000000-0000-0000-0000-000000000000",
            headers=mobile_user.headers,
        )
        assert response.status_code == 404

    async def test_web_list_and_delete(self, client, bank):
        await enroll_web(client, bank)
        listing = await client.get("/api/enrollment/list")
        enrollments = listing.json()["enrollments"]
        assert len(enrollments) == 1
        assert enrollments[0]["card_count"] == 2

        response = await client.delete(f"/api/enrollment/{enrollments[0]['id']}")
        assert response.status_code == 200
        assert response.json()["cards_removed"] == 2
        assert (await client.get("/api/enrollment/list")).json()["enrollments"] == []

    async def test_web_list_requires_session(self, client):
        response = await client.get("/api/enrollment/list")
        assert response.status_code == 401
