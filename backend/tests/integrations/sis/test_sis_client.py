"""
Tests for the HTTP SIS attendance client.
"""
import asyncio
import re
from datetime import date

import aiohttp
import pytest
from aioresponses import aioresponses

from attendance_sync.domain.sync_window import DateRange
from attendance_sync.integrations.sis.client import HttpSISClient, SISClientProtocol
from attendance_sync.integrations.sis.error_handler import (
    SISAuthenticationError,
    SISDataValidationError,
    SISErrorCategory,
    SISNetworkError,
    SISNotFoundError,
    SISRateLimitError,
)


BASE_URL = "https://sis.example.com/api"
ATTENDANCE_URL = re.compile(r"^https://sis\.example\.com/api/attendance/daterange.*$")
WINDOW = DateRange(date(2024, 8, 15), date(2024, 8, 16))


@pytest.fixture
async def client():
    async with HttpSISClient(BASE_URL, api_key="test-key", timeout=5) as sis_client:
        yield sis_client


class TestFetchAttendanceBatch:

    @pytest.mark.asyncio
    async def test_sends_window_and_paging_params(self, client):
        url = (
            f"{BASE_URL}/attendance/daterange"
            "?schoolCode=001&startDate=2024-08-15&endDate=2024-08-16&offset=500&limit=500"
        )
        with aioresponses() as m:
            m.get(url, payload=[{"studentId": "1001", "attendanceDate": "2024-08-15", "schoolCode": "001"}])

            records = await client.fetch_attendance_batch("001", WINDOW, offset=500, limit=500)

        assert records == [{"studentId": "1001", "attendanceDate": "2024-08-15", "schoolCode": "001"}]

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, client):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, payload=[])

            await client.fetch_attendance_batch("001", WINDOW)

            call = next(iter(m.requests.values()))[0]
            assert call.kwargs["headers"]["Authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_unwraps_data_envelope(self, client):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, payload={"data": [{"studentId": "1"}, {"studentId": "2"}], "total": 2})

            records = await client.fetch_attendance_batch("001", WINDOW)

        assert len(records) == 2

    @pytest.mark.asyncio
    async def test_unexpected_payload_shape(self, client):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, payload={"data": "not a list"})

            with pytest.raises(SISDataValidationError):
                await client.fetch_attendance_batch("001", WINDOW)


class TestStatusMapping:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_failures_not_retryable(self, client, status):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, status=status)

            with pytest.raises(SISAuthenticationError) as exc_info:
                await client.fetch_attendance_batch("001", WINDOW)

        assert not exc_info.value.retryable
        assert exc_info.value.school_code == "001"

    @pytest.mark.asyncio
    async def test_not_found(self, client):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, status=404)

            with pytest.raises(SISNotFoundError) as exc_info:
                await client.fetch_attendance_batch("999", WINDOW)

        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self, client):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, status=429, headers={"Retry-After": "12"})

            with pytest.raises(SISRateLimitError) as exc_info:
                await client.fetch_attendance_batch("001", WINDOW)

        assert exc_info.value.retryable
        assert exc_info.value.retry_after == 12.0

    @pytest.mark.asyncio
    async def test_rate_limit_without_hint(self, client):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, status=429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})

            with pytest.raises(SISRateLimitError) as exc_info:
                await client.fetch_attendance_batch("001", WINDOW)

        assert exc_info.value.retry_after is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503])
    async def test_server_errors_retryable(self, client, status):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, status=status, body="upstream unavailable")

            with pytest.raises(SISNetworkError) as exc_info:
                await client.fetch_attendance_batch("001", WINDOW)

        assert exc_info.value.retryable
        assert exc_info.value.details["status"] == status

    @pytest.mark.asyncio
    async def test_other_client_errors(self, client):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, status=400, body="bad schoolCode")

            with pytest.raises(SISDataValidationError) as exc_info:
                await client.fetch_attendance_batch("001", WINDOW)

        assert "bad schoolCode" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout(self, client):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, exception=asyncio.TimeoutError())

            with pytest.raises(SISNetworkError) as exc_info:
                await client.fetch_attendance_batch("001", WINDOW)

        assert exc_info.value.category == SISErrorCategory.TIMEOUT
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_connection_error(self, client):
        with aioresponses() as m:
            m.get(ATTENDANCE_URL, exception=aiohttp.ClientConnectionError("connection refused"))

            with pytest.raises(SISNetworkError) as exc_info:
                await client.fetch_attendance_batch("001", WINDOW)

        assert exc_info.value.category == SISErrorCategory.NETWORK


class TestOtherEndpoints:

    @pytest.mark.asyncio
    async def test_active_school_codes(self, client):
        with aioresponses() as m:
            m.get(f"{BASE_URL}/schools", payload={"data": [
                {"schoolCode": "001", "isActive": True},
                {"schoolCode": "002", "isActive": False},
                {"code": "003"},
                {"name": "no code"},
            ]})

            assert await client.list_active_school_codes() == ["001", "003"]

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        with aioresponses() as m:
            m.get(f"{BASE_URL}/health", payload={"status": "ok"})
            assert await client.health_check() is True

        with aioresponses() as m:
            m.get(f"{BASE_URL}/health", status=503)
            assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_requires_open_session(self):
        client = HttpSISClient(BASE_URL, api_key="test-key")
        with pytest.raises(RuntimeError):
            await client.fetch_attendance_batch("001", WINDOW)

    def test_satisfies_protocol(self):
        assert isinstance(HttpSISClient(BASE_URL, api_key="test-key"), SISClientProtocol)
