"""Unit tests for CloudflareDNSProvider."""

from typing import Any, Dict
from unittest.mock import MagicMock, call, patch

import pytest
import requests

from node_dns.cli import (
    CloudflareDNSProvider,
    ProviderRecord,
    ProviderRequestFailed,
    RecordType,
    Zone,
)

BASE_URL = "https://cf.example.test/client/v4"


def make_provider() -> CloudflareDNSProvider:
    return CloudflareDNSProvider("secret-token", url=BASE_URL + "/", timeout_seconds=5)


def make_response(payload: Any) -> MagicMock:
    mock_response = MagicMock()
    mock_response.raise_for_status = MagicMock()
    mock_response.json.return_value = payload
    return mock_response


def envelope(result: Any, page: int = 1, total_pages: int = 1) -> Dict[str, Any]:
    return {
        "success": True,
        "errors": [],
        "result": result,
        "result_info": {"page": page, "total_pages": total_pages},
    }


class TestCloudflareConnection:
    """Tests for Cloudflare connection functionality."""

    def test_session_carries_bearer_token(self) -> None:
        provider = make_provider()

        assert provider._session.headers["Authorization"] == "Bearer secret-token"

    def test_test_connection_success(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": True, "result": {"status": "active"}})

            assert provider.test_connection() is True
            mock_request.assert_called_once_with("GET", f"{BASE_URL}/user/tokens/verify", timeout=5)

    def test_test_connection_failure(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

            assert provider.test_connection() is False


class TestCloudflareListZones:
    """Tests for Cloudflare list_zones functionality."""

    def test_list_zones_follows_pagination(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [
                make_response(envelope([{"id": "z1", "name": "example.com"}], 1, 2)),
                make_response(envelope([{"id": "z2", "name": "example.org"}], 2, 2)),
            ]

            zones = provider.list_zones()

            assert zones == [Zone(id="z1", name="example.com"), Zone(id="z2", name="example.org")]
            assert mock_request.call_args_list == [
                call("GET", f"{BASE_URL}/zones", timeout=5, params={"per_page": 50, "page": 1}),
                call("GET", f"{BASE_URL}/zones", timeout=5, params={"per_page": 50, "page": 2}),
            ]

    def test_list_zones_skips_malformed_entries(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                envelope([{"id": "z1"}, "junk", {"id": "z2", "name": "example.org"}])
            )

            assert provider.list_zones() == [Zone(id="z2", name="example.org")]

    def test_list_zones_raises_when_api_reports_failure(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                {"success": False, "errors": [{"code": 9109, "message": "Invalid access token"}]}
            )

            with pytest.raises(ProviderRequestFailed, match="Invalid access token"):
                provider.list_zones()

    def test_list_zones_raises_on_http_error(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_response = make_response({})
            mock_response.raise_for_status.side_effect = requests.exceptions.HTTPError("500 Server Error")
            mock_request.return_value = mock_response

            with pytest.raises(ProviderRequestFailed):
                provider.list_zones()

    def test_list_zones_raises_on_invalid_json(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_response = make_response(None)
            mock_response.json.side_effect = ValueError("Expecting value")
            mock_request.return_value = mock_response

            with pytest.raises(ProviderRequestFailed):
                provider.list_zones()


class TestCloudflareRecords:
    """Tests for Cloudflare record listing, creation and deletion."""

    def test_list_records_filters_by_name(self) -> None:
        provider = make_provider()
        api_records = [
            {"id": "r1", "type": "A", "name": "api.example.com", "content": "1.2.3.4", "proxied": True},
            {"id": "r2", "type": "AAAA", "name": "api.example.com", "content": "2001:db8::1"},
        ]

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(envelope(api_records))

            records = provider.list_records("z1", "api.example.com")

            assert records == [
                ProviderRecord("r1", "z1", "A", "api.example.com", "1.2.3.4", True),
                ProviderRecord("r2", "z1", "AAAA", "api.example.com", "2001:db8::1", False),
            ]
            mock_request.assert_called_once_with(
                "GET",
                f"{BASE_URL}/zones/z1/dns_records",
                timeout=5,
                params={"name": "api.example.com", "per_page": 100, "page": 1},
            )

    def test_list_records_skips_malformed_records(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                envelope([{"id": "r1", "type": "A", "name": "api.example.com"}])
            )

            assert provider.list_records("z1", "api.example.com") == []

    def test_create_record_posts_automatic_ttl(self) -> None:
        provider = make_provider()
        created = {"id": "r9", "type": "A", "name": "api.example.com", "content": "1.2.3.4", "proxied": False}

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": True, "result": created})

            record = provider.create_record("z1", RecordType.A, "api.example.com", "1.2.3.4", False)

            assert record == ProviderRecord("r9", "z1", "A", "api.example.com", "1.2.3.4", False)
            mock_request.assert_called_once_with(
                "POST",
                f"{BASE_URL}/zones/z1/dns_records",
                timeout=5,
                json={
                    "type": "A",
                    "name": "api.example.com",
                    "content": "1.2.3.4",
                    "proxied": False,
                    "ttl": 1,
                },
            )

    def test_create_record_raises_on_network_error(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.Timeout("read timed out")

            with pytest.raises(ProviderRequestFailed):
                provider.create_record("z1", RecordType.AAAA, "api.example.com", "2001:db8::1", True)

    def test_delete_record(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": True, "result": {"id": "r1"}})

            provider.delete_record("z1", "r1")

            mock_request.assert_called_once_with(
                "DELETE", f"{BASE_URL}/zones/z1/dns_records/r1", timeout=5
            )

    def test_delete_record_raises_on_failure(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                {"success": False, "errors": [{"code": 81044, "message": "Record does not exist"}]}
            )

            with pytest.raises(ProviderRequestFailed):
                provider.delete_record("z1", "missing")
