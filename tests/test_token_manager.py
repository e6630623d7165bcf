"""Tests for the Bling OAuth token manager."""

import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs

import pytest
import responses

from commission_sync.erp_client import (
    ErpConfigurationError,
    TokenManager,
    TokenRefreshError,
)

TOKEN_URL = "https://bling.test/Api/v3/oauth/token"
NOW = datetime(2024, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def make_manager(store, **kwargs) -> TokenManager:
    return TokenManager(store, TOKEN_URL, now=lambda: NOW, **kwargs)


def seed(store, expires_at="2024-03-10T18:00:00Z", access_token="at-1", refresh_token="rt-1"):
    store.save_erp_credentials(
        client_id="cid",
        client_secret="secret",
        refresh_token=refresh_token,
        access_token=access_token,
        token_expires_at=expires_at,
    )


class TestExpiry:
    def test_buffer_applies(self, store):
        manager = make_manager(store)
        # 4 minutes left: inside the 5-minute buffer
        assert manager.is_expired("2024-03-10T12:04:00Z")
        assert not manager.is_expired("2024-03-10T12:06:00Z")

    def test_missing_or_garbage_expiry_is_expired(self, store):
        manager = make_manager(store)
        assert manager.is_expired(None)
        assert manager.is_expired("")
        assert manager.is_expired("tomorrow")

    def test_naive_timestamp_taken_as_utc(self, store):
        manager = make_manager(store)
        assert not manager.is_expired("2024-03-10T13:00:00")


class TestGetValidToken:
    @responses.activate
    def test_valid_token_returned_without_refresh(self, store):
        seed(store)
        assert make_manager(store).get_valid_token() == "at-1"
        assert len(responses.calls) == 0

    @responses.activate
    def test_expired_token_refreshed_with_basic_auth(self, store):
        seed(store, expires_at="2024-03-10T12:02:00Z")
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 21600},
            status=200,
        )

        token = make_manager(store).get_valid_token()

        assert token == "at-2"
        request = responses.calls[0].request
        expected = base64.b64encode(b"cid:secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        body = parse_qs(request.body)
        assert body == {"grant_type": ["refresh_token"], "refresh_token": ["rt-1"]}

    @responses.activate
    def test_rotated_credentials_persisted(self, store):
        seed(store, access_token=None)
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 3600},
        )

        make_manager(store).get_valid_token()

        saved = store.get_erp_credentials()
        assert saved.access_token == "at-2"
        assert saved.refresh_token == "rt-2"
        assert saved.token_expires_at == "2024-03-10T13:00:00Z"

    @responses.activate
    def test_refresh_token_kept_when_not_rotated(self, store):
        seed(store, expires_at=None)
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "at-2"})

        make_manager(store).get_valid_token()

        saved = store.get_erp_credentials()
        assert saved.refresh_token == "rt-1"
        # Default lifetime of 6 hours
        assert saved.token_expires_at == "2024-03-10T18:00:00Z"

    @responses.activate
    def test_refreshed_token_reused(self, store):
        seed(store, expires_at=None)
        responses.add(
            responses.POST, TOKEN_URL, json={"access_token": "at-2", "expires_in": 21600}
        )
        manager = make_manager(store)

        assert manager.get_valid_token() == "at-2"
        assert manager.get_valid_token() == "at-2"
        assert len(responses.calls) == 1

    @responses.activate
    def test_configured_client_overrides_stored(self, store):
        seed(store, expires_at=None)
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "at-2"})

        make_manager(store, client_id="other", client_secret="pw").get_valid_token()

        expected = base64.b64encode(b"other:pw").decode()
        assert responses.calls[0].request.headers["Authorization"] == f"Basic {expected}"


class TestFailures:
    def test_no_credentials(self, store):
        with pytest.raises(ErpConfigurationError):
            make_manager(store).get_valid_token()

    def test_missing_refresh_token(self, store):
        seed(store, expires_at=None, refresh_token="")
        with pytest.raises(ErpConfigurationError):
            make_manager(store).get_valid_token()

    @responses.activate
    def test_rejected_refresh_is_fatal(self, store):
        seed(store, expires_at=None)
        responses.add(responses.POST, TOKEN_URL, json={"error": "invalid_grant"}, status=400)

        with pytest.raises(TokenRefreshError) as exc_info:
            make_manager(store).get_valid_token()

        assert exc_info.value.status_code == 400
        # Nothing persisted on failure
        assert store.get_erp_credentials().refresh_token == "rt-1"

    @responses.activate
    def test_response_without_access_token(self, store):
        seed(store, expires_at=None)
        responses.add(responses.POST, TOKEN_URL, json={"token_type": "Bearer"})

        with pytest.raises(TokenRefreshError, match="no access_token"):
            make_manager(store).get_valid_token()
