"""Tests for AES-256-GCM credential encryption with versioned envelope."""

import base64
import json
import os
import platform
import stat

import pytest

from src.services.credential_encryption import (
    KEY_FILENAME,
    CredentialDecryptionError,
    decrypt_credentials,
    encrypt_credentials,
    get_or_create_key,
)


@pytest.fixture
def temp_key_dir(tmp_path):
    """Provide a temporary directory for key file storage."""
    return str(tmp_path / "keys")


class TestKeyManagement:
    """Tests for encryption key resolution."""

    def test_creates_key_file(self, temp_key_dir):
        key = get_or_create_key(key_dir=temp_key_dir)
        assert len(key) == 32
        assert os.path.exists(os.path.join(temp_key_dir, KEY_FILENAME))

    def test_is_idempotent(self, temp_key_dir):
        assert get_or_create_key(key_dir=temp_key_dir) == get_or_create_key(key_dir=temp_key_dir)

    @pytest.mark.skipif(platform.system() == "Windows", reason="Unix permissions")
    def test_key_file_is_owner_only(self, temp_key_dir):
        get_or_create_key(key_dir=temp_key_dir)
        mode = os.stat(os.path.join(temp_key_dir, KEY_FILENAME)).st_mode
        assert stat.S_IMODE(mode) == 0o600

    @pytest.mark.skipif(platform.system() == "Windows", reason="Unix permissions")
    def test_permissive_key_file_warns(self, temp_key_dir, caplog):
        import logging

        os.makedirs(temp_key_dir)
        key_path = os.path.join(temp_key_dir, KEY_FILENAME)
        with open(key_path, "wb") as f:
            f.write(os.urandom(32))
        os.chmod(key_path, 0o644)
        with caplog.at_level(logging.WARNING):
            get_or_create_key(key_dir=temp_key_dir)
        assert any("chmod 600" in msg for msg in caplog.messages)

    def test_wrong_length_key_file(self, temp_key_dir):
        os.makedirs(temp_key_dir)
        with open(os.path.join(temp_key_dir, KEY_FILENAME), "wb") as f:
            f.write(b"too_short")
        with pytest.raises(ValueError, match="invalid length"):
            get_or_create_key(key_dir=temp_key_dir)

    def test_env_key_takes_precedence(self, temp_key_dir, monkeypatch):
        raw_key = os.urandom(32)
        monkeypatch.setenv("MARKETSYNC_CREDENTIAL_KEY", base64.b64encode(raw_key).decode())
        assert get_or_create_key(key_dir=temp_key_dir) == raw_key
        assert not os.path.exists(os.path.join(temp_key_dir, KEY_FILENAME))

    def test_env_key_file(self, tmp_path, monkeypatch):
        custom = tmp_path / "custom_key"
        custom.write_bytes(os.urandom(32))
        monkeypatch.setenv("MARKETSYNC_CREDENTIAL_KEY_FILE", str(custom))
        assert get_or_create_key() == custom.read_bytes()

    def test_env_key_file_symlink_rejected(self, tmp_path, monkeypatch):
        real = tmp_path / "real"
        real.write_bytes(os.urandom(32))
        link = tmp_path / "link"
        link.symlink_to(real)
        monkeypatch.setenv("MARKETSYNC_CREDENTIAL_KEY_FILE", str(link))
        with pytest.raises(ValueError, match="regular file"):
            get_or_create_key()

    def test_invalid_base64_env_key(self, monkeypatch):
        monkeypatch.setenv("MARKETSYNC_CREDENTIAL_KEY", "not-valid-base64!!!")
        with pytest.raises(ValueError, match="invalid base64"):
            get_or_create_key()

    def test_default_dir_follows_home_override(self, tmp_path):
        get_or_create_key()
        assert (tmp_path / "home" / KEY_FILENAME).exists()


class TestEncryptDecrypt:
    """Tests for the versioned envelope."""

    KEY = bytes(range(32))

    def test_round_trip(self):
        creds = {"public_key": "pk", "secret_key": "sk"}
        envelope = encrypt_credentials(creds, self.KEY, aad="shop-a")
        assert decrypt_credentials(envelope, self.KEY, aad="shop-a") == creds

    def test_envelope_format(self):
        envelope = json.loads(encrypt_credentials({"k": "v"}, self.KEY))
        assert envelope["v"] == 1
        assert envelope["alg"] == "AES-256-GCM"
        assert len(base64.b64decode(envelope["nonce"])) == 12

    def test_unique_nonce(self):
        assert encrypt_credentials({"k": "v"}, self.KEY) != encrypt_credentials({"k": "v"}, self.KEY)

    def test_wrong_aad(self):
        envelope = encrypt_credentials({"k": "v"}, self.KEY, aad="shop-a")
        with pytest.raises(CredentialDecryptionError):
            decrypt_credentials(envelope, self.KEY, aad="shop-b")

    def test_wrong_key(self):
        envelope = encrypt_credentials({"k": "v"}, self.KEY)
        with pytest.raises(CredentialDecryptionError):
            decrypt_credentials(envelope, os.urandom(32))

    def test_tampered_ciphertext(self):
        envelope = json.loads(encrypt_credentials({"k": "v"}, self.KEY))
        raw = base64.b64decode(envelope["ct"])
        envelope["ct"] = base64.b64encode(raw[:-1] + bytes([raw[-1] ^ 0xFF])).decode()
        with pytest.raises(CredentialDecryptionError):
            decrypt_credentials(json.dumps(envelope), self.KEY)

    @pytest.mark.parametrize(
        "envelope,match",
        [
            ("not json{{", "Invalid envelope"),
            ('["list"]', "not a JSON object"),
            ('{"v": 99, "alg": "AES-256-GCM", "nonce": "AA==", "ct": "AA=="}', "version"),
            ('{"v": 1, "alg": "ROT13", "nonce": "AA==", "ct": "AA=="}', "algorithm"),
            ('{"v": 1, "alg": "AES-256-GCM", "nonce": "AA==", "ct": "AA=="}', "nonce length"),
        ],
    )
    def test_malformed_envelopes(self, envelope, match):
        with pytest.raises(CredentialDecryptionError, match=match):
            decrypt_credentials(envelope, self.KEY)

    def test_encrypt_rejects_short_key(self):
        with pytest.raises(ValueError):
            encrypt_credentials({"k": "v"}, b"short")
