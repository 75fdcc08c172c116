"""
Tests for the security primitives: the credential vault, wallet card
tokens, password hashing and web session tokens.
"""

from datetime import timedelta

import pytest
from jose import JWTError

from wsim.security import (
    VaultDecryptionError,
    create_session_token,
    decode_session_token,
    decrypt,
    encrypt,
    generate_token,
    generate_wallet_card_token,
    hash_password,
    parse_wallet_card_token,
    verify_password,
)


class TestCredentialVault:

    @pytest.mark.parametrize(
        "secret",
        ["bank-wallet-credential-🔑", "", "x" * 10240],
        ids=["unicode", "empty", "10kb"],
    )
    def test_round_trip(self, secret):
        assert decrypt(encrypt(secret)) == secret

    def test_ciphertext_differs_every_time(self):
        """The same plaintext never encrypts to the same ciphertext twice."""
        assert encrypt("same") != encrypt("same")

    def test_ciphertext_hides_plaintext(self):
        assert "super-secret" not in encrypt("super-secret")

    def test_tampered_ciphertext_fails_closed(self):
        ciphertext = encrypt("credential")
        middle = len(ciphertext) // 2
        replacement = "A" if ciphertext[middle] != "A" else "B"
        flipped = ciphertext[:middle] + replacement + ciphertext[middle + 1:]
        with pytest.raises(VaultDecryptionError):
            decrypt(flipped)

    def test_garbage_input_fails_closed(self):
        with pytest.raises(VaultDecryptionError):
            decrypt("not-a-fernet-token")


class TestWalletCardTokens:

    def test_token_shape(self):
        token = generate_wallet_card_token("td-sim")
        prefix, bsim_id, unique = token.split("_")
        assert prefix == "wsim"
        assert bsim_id == "td-sim"
        assert len(unique) == 12
        int(unique, 16)

    def test_tokens_are_unique(self):
        assert generate_wallet_card_token("td-sim") != generate_wallet_card_token("td-sim")

    def test_parse_round_trip(self):
        token = generate_wallet_card_token("td-sim")
        assert parse_wallet_card_token(token) == ("td-sim", token.split("_")[2])

    @pytest.mark.parametrize("token", [
        "wsim_td-sim",
        "card_td-sim_abc123",
        "wsim_td_sim_abc123",
        "",
    ])
    def test_parse_rejects_malformed(self, token):
        assert parse_wallet_card_token(token) is None


class TestPasswords:

    def test_hash_and_verify(self):
        hashed = hash_password("correct horse")
        assert hashed != "correct horse"
        assert hashed.startswith("$argon2")
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)


class TestSessionTokens:

    def test_round_trip(self):
        payload = decode_session_token(create_session_token("user-1"))
        assert payload["sub"] == "user-1"
        assert payload["type"] == "session"

    def test_expired_token_rejected(self):
        token = create_session_token("user-1", expires_delta=timedelta(seconds=-10))
        with pytest.raises(JWTError):
            decode_session_token(token)


def test_generate_token_is_hex():
    token = generate_token(32)
    assert len(token) == 64
    int(token, 16)
