"""Tests for PreviewPlaneSettings."""

from __future__ import annotations

import pytest

from preview_plane.app.settings import PreviewPlaneSettings


def test_defaults_match_reference_timings():
    settings = PreviewPlaneSettings()

    assert settings.is_local is True
    assert settings.branch_grace_seconds == 3.0
    assert settings.poll_interval_seconds == 5.0
    assert settings.max_poll_attempts == 120
    assert settings.assume_ready_on_timeout is False
    assert settings.validate() == []


def test_from_env_parses_values():
    settings = PreviewPlaneSettings.from_env({
        "ENVIRONMENT": "production",
        "GITHUB_TOKEN": "ghp_x",
        "SPRITES_TOKEN": "spr_x",
        "GITHUB_BASE_REF": "develop",
        "BRANCH_GRACE_SECONDS": "1.5",
        "BRANCH_TIMEOUT_SECONDS": "0",
        "PREVIEW_POLL_INTERVAL_SECONDS": "2",
        "PREVIEW_MAX_POLL_ATTEMPTS": "10",
        "PREVIEW_MAX_TRANSPORT_FAILURES": "7",
        "PREVIEW_ASSUME_READY": "true",
        "MAX_RETAINED_SESSIONS": "2",
        "CORS_ORIGINS": "https://app.example.com, https://admin.example.com",
    })

    assert settings.environment == "production"
    assert settings.github_base_ref == "develop"
    assert settings.branch_grace_seconds == 1.5
    assert settings.branch_timeout_seconds == 0.0
    assert settings.poll_interval_seconds == 2.0
    assert settings.max_poll_attempts == 10
    assert settings.max_transport_failures == 7
    assert settings.assume_ready_on_timeout is True
    assert settings.max_retained_sessions == 2
    assert settings.cors_origins == ("https://app.example.com", "https://admin.example.com")
    assert settings.validate() == []


def test_from_env_empty_uses_defaults():
    assert PreviewPlaneSettings.from_env({}) == PreviewPlaneSettings()


def test_non_local_requires_tokens():
    errors = PreviewPlaneSettings(environment="staging").validate()

    assert "staging: github_token is required" in errors
    assert "staging: sprites_token is required" in errors


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("max_poll_attempts", 0),
        ("max_transport_failures", 0),
        ("poll_interval_seconds", -1.0),
        ("branch_grace_seconds", -1.0),
        ("max_retained_sessions", -1),
    ],
)
def test_rejects_out_of_range_values(field, value):
    errors = PreviewPlaneSettings(**{field: value}).validate()
    assert any(field in e for e in errors)
