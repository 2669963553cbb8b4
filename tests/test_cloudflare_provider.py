"""Unit tests for CloudflareZoneDirectory."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from bt_dns_manager.core import (
    RecordLookupFailure,
    UpdateFailure,
    Zone,
    ZoneLookupFailure,
    ZoneRecord,
)
from bt_dns_manager.providers import CloudflareZoneDirectory

API = "https://api.cloudflare.test/client/v4"


def make_response(envelope) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = envelope
    return response


def envelope(result, page: int = 1, total_pages: int = 1) -> dict:
    return {
        "success": True,
        "errors": [],
        "result": result,
        "result_info": {"page": page, "total_pages": total_pages},
    }


@pytest.fixture
def provider() -> CloudflareZoneDirectory:
    return CloudflareZoneDirectory(api_token="token-123", base_url=API + "/", timeout=5)


class TestCloudflareSession:
    def test_session_sends_bearer_token(self, provider: CloudflareZoneDirectory) -> None:
        assert provider._session.headers["Authorization"] == "Bearer token-123"
        assert provider.name == "Cloudflare"

    def test_test_connection_success(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(envelope({"status": "active"}))

            assert provider.test_connection() is True
            mock_request.assert_called_once_with("GET", f"{API}/user/tokens/verify", timeout=5)

    def test_test_connection_failure(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

            assert provider.test_connection() is False


class TestCloudflareListZones:
    def test_list_zones_returns_zones(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                envelope([{"id": "z1", "name": "example.com"}, {"id": "z2", "name": "example.org"}])
            )

            zones = provider.list_zones()

            assert zones == [Zone(id="z1", name="example.com"), Zone(id="z2", name="example.org")]
            mock_request.assert_called_once_with(
                "GET", f"{API}/zones", timeout=5, params={"page": 1, "per_page": 50}
            )

    def test_list_zones_follows_pagination(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [
                make_response(envelope([{"id": "z1", "name": "a.com"}], page=1, total_pages=2)),
                make_response(envelope([{"id": "z2", "name": "b.com"}], page=2, total_pages=2)),
            ]

            zones = provider.list_zones()

            assert [z.name for z in zones] == ["a.com", "b.com"]
            assert mock_request.call_count == 2
            assert mock_request.call_args.kwargs["params"]["page"] == 2

    def test_list_zones_skips_malformed_entries(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                envelope([{"id": "z1"}, "garbage", {"id": "z2", "name": "example.com"}])
            )

            assert provider.list_zones() == [Zone(id="z2", name="example.com")]

    def test_list_zones_network_error_raises(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.Timeout("timed out")

            with pytest.raises(ZoneLookupFailure):
                provider.list_zones()

    def test_list_zones_unsuccessful_envelope_raises(
        self, provider: CloudflareZoneDirectory
    ) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                {"success": False, "errors": [{"code": 9109, "message": "Invalid access token"}]}
            )

            with pytest.raises(ZoneLookupFailure, match="Invalid access token"):
                provider.list_zones()


class TestCloudflareListRecords:
    def test_list_records_returns_a_records(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                envelope(
                    [
                        {
                            "id": "r1",
                            "type": "A",
                            "name": "home.example.com",
                            "content": "8.8.8.8",
                            "proxied": True,
                        }
                    ]
                )
            )

            records = provider.list_records("z1")

            assert records == [
                ZoneRecord(
                    zone_id="z1",
                    record_id="r1",
                    name="home.example.com",
                    content="8.8.8.8",
                    proxied=True,
                    type="A",
                )
            ]
            mock_request.assert_called_once_with(
                "GET",
                f"{API}/zones/z1/dns_records",
                timeout=5,
                params={"type": "A", "page": 1, "per_page": 50},
            )

    def test_list_records_error_raises(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.HTTPError("500 Server Error")

            with pytest.raises(RecordLookupFailure):
                provider.list_records("z1")


class TestCloudflareUpdateRecord:
    RECORD = ZoneRecord(zone_id="z1", record_id="r1", name="home.example.com", content="8.8.8.8")
    PAYLOAD = {
        "type": "A",
        "name": "home.example.com",
        "content": "9.9.9.9",
        "ttl": 1,
        "proxied": False,
    }

    def test_update_record_puts_payload(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(envelope({"id": "r1"}))

            provider.update_record(self.RECORD, self.PAYLOAD)

            mock_request.assert_called_once_with(
                "PUT", f"{API}/zones/z1/dns_records/r1", timeout=5, json=self.PAYLOAD
            )

    def test_update_record_rejected_raises(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": False, "errors": ["denied"]})

            with pytest.raises(UpdateFailure):
                provider.update_record(self.RECORD, self.PAYLOAD)

    def test_update_record_http_error_raises(self, provider: CloudflareZoneDirectory) -> None:
        with patch.object(provider._session, "request") as mock_request:
            response = make_response({})
            response.raise_for_status.side_effect = requests.exceptions.HTTPError("403 Forbidden")
            mock_request.return_value = response

            with pytest.raises(UpdateFailure, match="403"):
                provider.update_record(self.RECORD, self.PAYLOAD)
