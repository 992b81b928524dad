"""
Tests for private-key encryption and masking.
"""

from cryptography.fernet import Fernet

from app import crypto


def test_mask_key_keeps_prefix_and_suffix():
    masked = crypto.mask_key("pk_live_1234567890abcd")
    assert masked.startswith("pk_liv")
    assert masked.endswith("abcd")
    assert "1234567890" not in masked


def test_mask_key_short_and_empty():
    assert crypto.mask_key("short") == "••••••••"
    assert crypto.mask_key("") == ""
    assert crypto.mask_key(None) == ""


def test_encrypt_round_trip(monkeypatch):
    monkeypatch.setattr(crypto, "_fernet", Fernet(Fernet.generate_key()))
    token = crypto.encrypt_secret("pk_secret")
    assert token != "pk_secret"
    assert crypto.decrypt_secret(token) == "pk_secret"


def test_decrypt_passes_legacy_plaintext_through(monkeypatch):
    monkeypatch.setattr(crypto, "_fernet", Fernet(Fernet.generate_key()))
    assert crypto.decrypt_secret("pk_plain_legacy") == "pk_plain_legacy"


def test_none_values_pass_through():
    assert crypto.encrypt_secret(None) is None
    assert crypto.decrypt_secret(None) is None
