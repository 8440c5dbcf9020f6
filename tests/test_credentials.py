"""
Tests for Shiprocket credential resolution.
"""
from types import SimpleNamespace

import pytest

from shiprocket_fulfillment.core.exceptions import MissingCredentialsError
from shiprocket_fulfillment.services.credentials import (
    ShiprocketCredentials,
    mask_email,
    normalize_credential,
    resolve_credentials,
)


class TestNormalizeCredential:
    """Whitespace and quote stripping."""

    @pytest.mark.parametrize("raw,expected", [
        ("ops@example.com", "ops@example.com"),
        ("  ops@example.com  ", "ops@example.com"),
        ("'ops@example.com'", "ops@example.com"),
        ('"s3cret"', "s3cret"),
        (" ' spaced ' ", "spaced"),
        ("''double''", "'double'"),
        ("'mismatched\"", "'mismatched\""),
        ("'", "'"),
        (None, ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_credential(raw) == expected


class TestResolveCredentials:

    def test_seller_config_takes_precedence(self):
        creds = resolve_credentials(
            {"email": "seller@example.com", "password": "'seller-pw'"},
            default_email="default@example.com",
            default_password="default-pw",
        )
        assert creds == ShiprocketCredentials("seller@example.com", "seller-pw")

    def test_seller_config_object(self):
        config = SimpleNamespace(email=" seller@example.com ", password="pw")
        creds = resolve_credentials(config, default_email="", default_password="")
        assert creds.email == "seller@example.com"

    def test_incomplete_seller_config_falls_back_to_defaults(self):
        creds = resolve_credentials(
            {"email": "seller@example.com", "password": "  "},
            default_email='"default@example.com"',
            default_password="default-pw",
        )
        assert creds == ShiprocketCredentials("default@example.com", "default-pw")

    def test_uses_settings_when_no_defaults_given(self):
        creds = resolve_credentials()
        assert creds.email == "ops@example.com"
        assert creds.password == "test-password"

    def test_missing_everywhere_raises(self):
        with pytest.raises(MissingCredentialsError) as exc_info:
            resolve_credentials(None, default_email="", default_password="")
        assert exc_info.value.code == "MISSING_CREDENTIALS"

    def test_quotes_only_counts_as_missing(self):
        with pytest.raises(MissingCredentialsError):
            resolve_credentials(None, default_email="''", default_password='""')


def test_repr_never_shows_password():
    creds = ShiprocketCredentials("operations@example.com", "hunter2")
    assert "hunter2" not in repr(creds)
    assert "o***@example.com" in repr(creds)


def test_mask_email():
    assert mask_email("ab@example.com") == "a*@example.com"
    assert mask_email("not-an-email") == "***"
