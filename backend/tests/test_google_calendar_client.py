from urllib.parse import parse_qs, urlparse

import pytest

from imobcrm.services.google_calendar_client import (
    CALENDAR_SCOPES, CalendarNotConfigured, build_auth_url
)


def test_auth_url_requests_offline_access_with_consent():
    url = build_auth_url(
        "state-123",
        client_id="client-abc",
        client_secret="secret-abc",
        redirect_uri="http://localhost:8000/api/google-calendar/callback",
    )

    parsed = urlparse(url)
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://accounts.google.com/o/oauth2/v2/auth"
    assert params["client_id"] == "client-abc"
    assert params["redirect_uri"] == "http://localhost:8000/api/google-calendar/callback"
    assert params["response_type"] == "code"
    assert params["access_type"] == "offline"
    assert params["prompt"] == "consent"
    assert params["state"] == "state-123"
    assert params["scope"].split() == CALENDAR_SCOPES
    # a troca do code não envia code_verifier
    assert "code_challenge" not in params


def test_auth_url_requires_credentials(monkeypatch):
    from imobcrm.config import settings

    monkeypatch.setattr(settings, "google_calendar_client_id", None)

    with pytest.raises(CalendarNotConfigured):
        build_auth_url("state-123")
