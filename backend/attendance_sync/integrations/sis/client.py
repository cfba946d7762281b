"""
Upstream SIS attendance client.

``SISClientProtocol`` is the contract the sync service depends on;
``HttpSISClient`` implements it over the district SIS REST API.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import aiohttp

from attendance_sync.domain.sync_window import DateRange
from attendance_sync.integrations.sis.error_handler import (
    SISAuthenticationError,
    SISError,
    SISNetworkError,
    SISNotFoundError,
    SISRateLimitError,
    SISDataValidationError,
)


logger = logging.getLogger(__name__)


@runtime_checkable
class SISClientProtocol(Protocol):
    """Protocol that every upstream attendance source must follow."""

    async def fetch_attendance_batch(
        self,
        school_code: str,
        date_range: DateRange,
        offset: int = 0,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        """Return one page of raw attendance records for a school and date range."""
        ...

    async def health_check(self) -> bool:
        """Check if the SIS is reachable."""
        ...


class HttpSISClient:
    """SIS REST client using bearer-token authentication."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._http_session = session
        self._owns_session = session is None

    async def __aenter__(self):
        """Async context manager entry."""
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    'User-Agent': 'Attendance-Sync/1.0',
                    'Accept': 'application/json',
                }
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        if self._http_session and self._owns_session:
            await self._http_session.close()
        self._http_session = None

    async def fetch_attendance_batch(
        self,
        school_code: str,
        date_range: DateRange,
        offset: int = 0,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        """
        Fetch one page of attendance for a school.

        Args:
            school_code: SIS school code
            date_range: Inclusive date range
            offset: Number of records to skip
            limit: Maximum number of records to return

        Returns:
            Raw attendance records, at most ``limit`` of them
        """
        params = {
            'schoolCode': school_code,
            'startDate': date_range.start_date.isoformat(),
            'endDate': date_range.end_date.isoformat(),
            'offset': offset,
            'limit': limit,
        }
        payload = await self._request('GET', '/attendance/daterange', params=params, school_code=school_code)

        records = payload.get('data', []) if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            raise SISDataValidationError(
                f"Unexpected attendance payload for school {school_code}: {type(records).__name__}",
                school_code=school_code,
                operation_type='fetch_attendance_batch'
            )

        logger.debug(
            f"Fetched {len(records)} attendance records for school {school_code} "
            f"{date_range} (offset={offset}, limit={limit})"
        )
        return records

    async def list_active_school_codes(self) -> List[str]:
        payload = await self._request('GET', '/schools')
        schools = payload.get('data', []) if isinstance(payload, dict) else payload
        return [
            str(school.get('schoolCode') or school.get('code'))
            for school in schools
            if school.get('isActive', True) and (school.get('schoolCode') or school.get('code'))
        ]

    async def health_check(self) -> bool:
        try:
            await self._request('GET', '/health')
            return True
        except SISError as e:
            logger.warning(f"SIS health check failed: {e}")
            return False

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        school_code: Optional[str] = None
    ) -> Any:
        """Make an authenticated request and map failures onto the SIS error taxonomy."""
        if not self._http_session:
            raise RuntimeError("HTTP session not initialized")

        url = f"{self.base_url}{endpoint}"
        headers = {'Authorization': f"Bearer {self.api_key}"}

        try:
            async with self._http_session.request(method, url, params=params, headers=headers) as response:
                if response.status in (401, 403):
                    raise SISAuthenticationError(
                        f"SIS rejected credentials ({response.status})",
                        school_code=school_code,
                        operation_type=endpoint
                    )
                if response.status == 404:
                    raise SISNotFoundError(
                        f"SIS resource not found: {endpoint}",
                        school_code=school_code,
                        operation_type=endpoint
                    )
                if response.status == 429:
                    raise SISRateLimitError(
                        "SIS rate limit exceeded",
                        retry_after=self._parse_retry_after(response.headers.get('Retry-After')),
                        school_code=school_code,
                        operation_type=endpoint
                    )
                if response.status >= 500:
                    body = await response.text()
                    raise SISNetworkError(
                        f"SIS server error {response.status}: {body[:200]}",
                        school_code=school_code,
                        operation_type=endpoint,
                        details={'status': response.status}
                    )
                if response.status >= 400:
                    body = await response.text()
                    raise SISDataValidationError(
                        f"SIS rejected request ({response.status}): {body[:200]}",
                        school_code=school_code,
                        operation_type=endpoint,
                        details={'status': response.status}
                    )

                return await response.json(content_type=None)

        except SISError:
            raise
        except asyncio.TimeoutError as e:
            raise SISNetworkError(
                f"SIS request timed out after {self.timeout}s",
                timeout=True,
                school_code=school_code,
                operation_type=endpoint,
                original_exception=e
            )
        except aiohttp.ClientError as e:
            raise SISNetworkError(
                f"SIS connection error: {e}",
                school_code=school_code,
                operation_type=endpoint,
                original_exception=e
            )

    @staticmethod
    def _parse_retry_after(value: Optional[str]) -> Optional[float]:
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None
