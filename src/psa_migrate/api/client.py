"""PSA REST API client implementation."""

import asyncio
import json
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import aiohttp
import requests
from loguru import logger
from pydantic import BaseModel

from ..config.config import PSAInstanceConfig
from .exceptions import (
    PSAAPIError,
    PSAAuthenticationError,
    PSANotFoundError,
    PSAPermissionError,
    PSARateLimitError,
    PSAValidationError,
)
from .rate_limiter import RateLimiter

API_PATH = '/ATServicesRest/V1.0'
ZONE_LOOKUP_URL = 'https://webservices.autotask.net/ATServicesRest/V1.0/zoneInformation'
MAX_RECORDS = 500


class APIResponse(BaseModel):
    """Standard API response wrapper."""

    status_code: int
    data: Any
    headers: Dict[str, str]
    success: bool


def extract_created_id(data: Any) -> Optional[int]:
    """Pull the new record id out of a create response."""
    if not isinstance(data, dict):
        return None
    item = data.get('item')
    candidates = []
    if isinstance(item, dict):
        candidates.extend([item.get('itemId'), item.get('id')])
    candidates.extend([data.get('itemId'), data.get('id')])
    for value in candidates:
        try:
            number = int(value)
        except (TypeError, ValueError):
            continue
        if number > 0:
            return number
    return None


def _error_message(status: int, body: Any, text: str) -> str:
    if isinstance(body, dict) and body.get('errors'):
        joined = '; '.join(str(e) for e in body['errors'])
        # gateway failures keep their status so they classify as transient
        if status in (502, 503, 504):
            return f'HTTP {status}: {joined}'
        return f'API request failed: {joined}'
    return f'HTTP {status}: {text}'


class PSAClient:
    """PSA REST API client with header authentication.

    Every entity call goes through :meth:`request`, which returns the decoded
    JSON body (``item``, ``items``, ``pageDetails``, ``itemId``...). The
    higher level helpers are thin conveniences over it.
    """

    def __init__(self, config: PSAInstanceConfig):
        """Initialize PSA client.

        Args:
            config: PSA tenant configuration
        """
        self.config = config
        self.base_url = config.url.rstrip('/') + API_PATH
        self.rate_limiter = RateLimiter(config.rate_limit_per_second)
        self.session = requests.Session()
        self.session.headers.update(self._auth_headers())

        logger.info(f'Initialized PSA client for {config.url}')

    def _auth_headers(self) -> Dict[str, str]:
        headers = {
            'ApiIntegrationCode': self.config.integration_code,
            'UserName': self.config.username,
            'Secret': self.config.secret,
            'Content-Type': 'application/json',
            'User-Agent': 'psa-migrate/0.1.0',
        }
        if self.config.impersonation_resource_id:
            headers['ImpersonationResourceId'] = str(
                self.config.impersonation_resource_id
            )
        return headers

    def _build_url(self, endpoint: str) -> str:
        """Build full API URL from endpoint.

        Absolute URLs (``nextPageUrl`` values) are returned untouched.

        Args:
            endpoint: API endpoint path

        Returns:
            Full API URL
        """
        if endpoint.startswith(('http://', 'https://')):
            return endpoint
        return urljoin(self.base_url + '/', endpoint.lstrip('/'))

    def _handle_response(self, response: requests.Response) -> APIResponse:
        """Convert a synchronous response to the standard format.

        Raises:
            PSAAPIError: For various API errors
        """
        headers = dict(response.headers)
        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text

        self._raise_for_status(response.status_code, headers, data, response.text)

        return APIResponse(
            status_code=response.status_code,
            data=data,
            headers=headers,
            success=200 <= response.status_code < 300,
        )

    @staticmethod
    def _raise_for_status(
        status: int, headers: Dict[str, str], data: Any, text: str
    ) -> None:
        if status == 429:
            retry_after = int(headers.get('Retry-After', 60))
            raise PSARateLimitError(
                f'Rate limit exceeded (429). Retry after {retry_after} seconds',
                retry_after=retry_after,
                status_code=status,
                response_data=data,
            )

        if status == 401:
            raise PSAAuthenticationError(
                'Authentication failed', status_code=status, response_data=data
            )

        if status == 403:
            raise PSAPermissionError(
                'Permission denied', status_code=status, response_data=data
            )

        if status == 404:
            raise PSANotFoundError(
                'Resource not found', status_code=status, response_data=data
            )

        if status >= 400:
            raise PSAAPIError(
                _error_message(status, data, text),
                status_code=status,
                response_data=data,
            )

    async def _make_request_async(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> APIResponse:
        """Make asynchronous API request.

        Args:
            method: HTTP method
            endpoint: API endpoint
            params: Query parameters
            data: Request body data

        Returns:
            API response
        """
        url = self._build_url(endpoint)
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)

        await self.rate_limiter.acquire()

        async with aiohttp.ClientSession(
            headers=self._auth_headers(), timeout=timeout
        ) as session:
            try:
                async with session.request(
                    method=method, url=url, params=params, json=data
                ) as response:
                    response_headers = dict(response.headers)
                    response_text = await response.text()
                    try:
                        response_data = (
                            json.loads(response_text) if response_text else None
                        )
                    except ValueError:
                        response_data = response_text

                    self._raise_for_status(
                        response.status, response_headers, response_data, response_text
                    )

                    return APIResponse(
                        status_code=response.status,
                        data=response_data,
                        headers=response_headers,
                        success=200 <= response.status < 300,
                    )

            except asyncio.TimeoutError:
                logger.error(f'Request timeout during {method} {endpoint}')
                raise PSAAPIError(f'Request timeout after {self.config.timeout}s')
            except aiohttp.ClientError as e:
                logger.error(f'Network error during API request: {e}')
                raise PSAAPIError(f'Network error: {e}')

    async def request(
        self,
        method: str,
        endpoint: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send one entity request and return the decoded body.

        Args:
            method: HTTP method
            endpoint: Entity path such as ``Contacts/1001`` or an absolute URL
            body: JSON body

        Returns:
            Decoded response body, ``{}`` when the API sent nothing
        """
        response = await self._make_request_async(method, endpoint, data=body)
        if isinstance(response.data, dict):
            return response.data
        return {}

    async def get_entity(self, endpoint: str) -> Optional[Dict[str, Any]]:
        """Fetch a single record, or None when it does not exist."""
        try:
            data = await self.request('GET', endpoint)
        except PSANotFoundError:
            return None
        item = data.get('item')
        return item if isinstance(item, dict) else None

    async def get_items(self, endpoint: str) -> List[Dict[str, Any]]:
        """GET a child collection such as an attachment list."""
        data = await self.request('GET', endpoint)
        items = data.get('items')
        return list(items) if isinstance(items, list) else []

    async def query_all(
        self,
        collection: str,
        filters: List[Dict[str, Any]],
        include_fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Run a filtered query and follow ``nextPageUrl`` to exhaustion.

        Args:
            collection: Entity collection, e.g. ``ConfigurationItemNotes``
            filters: Filter expressions
            include_fields: Optional projection

        Returns:
            All matching records
        """
        body: Dict[str, Any] = {'filter': filters, 'MaxRecords': MAX_RECORDS}
        if include_fields:
            body['IncludeFields'] = include_fields

        data = await self.request('POST', f'{collection}/query', body)
        results = list(data.get('items') or [])
        next_page = (data.get('pageDetails') or {}).get('nextPageUrl')

        while next_page:
            data = await self.request('POST', next_page, body)
            results.extend(data.get('items') or [])
            next_page = (data.get('pageDetails') or {}).get('nextPageUrl')

        logger.debug(f'Retrieved {len(results)} items from {collection}')
        return results

    async def query_count(
        self, collection: str, filters: List[Dict[str, Any]]
    ) -> Optional[int]:
        """Count matching records; None when the count is unavailable."""
        try:
            data = await self.request(
                'POST', f'{collection}/query/count', {'filter': filters}
            )
        except PSAAPIError as e:
            logger.warning(f'Could not count {collection}: {e}')
            return None
        count = data.get('queryCount')
        return count if isinstance(count, int) else None

    async def create(self, endpoint: str, payload: Dict[str, Any]) -> int:
        """POST a new record and return its id.

        Raises:
            PSAAPIError: If the API did not report a new id
        """
        data = await self.request('POST', endpoint, payload)
        new_id = extract_created_id(data)
        if new_id is None:
            raise PSAAPIError(f'Create on {endpoint} returned no itemId')
        return new_id

    async def update(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """PATCH an existing record."""
        if not payload.get('id'):
            raise PSAValidationError(f'PATCH on {endpoint} requires an id')
        return await self.request('PATCH', endpoint, payload)

    async def delete(self, endpoint: str) -> Dict[str, Any]:
        """DELETE a record."""
        return await self.request('DELETE', endpoint)

    def get(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        """Make synchronous GET request.

        Args:
            endpoint: API endpoint
            params: Query parameters
            **kwargs: Additional request arguments

        Returns:
            API response
        """
        url = self._build_url(endpoint)
        kwargs.setdefault('timeout', self.config.timeout)

        try:
            response = self.session.get(url, params=params, **kwargs)
            return self._handle_response(response)
        except requests.RequestException as e:
            logger.error(f'Network error during GET request: {e}')
            raise PSAAPIError(f'Network error: {e}')

    def get_threshold_information(self) -> Optional[Dict[str, Any]]:
        """Return the tenant's API usage thresholds."""
        try:
            response = self.get('ThresholdInformation')
        except PSAAPIError as e:
            logger.warning(f'Could not retrieve threshold information: {e}')
            return None
        return response.data if isinstance(response.data, dict) else None

    def test_connection(self) -> bool:
        """Test connection to the PSA zone.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            return self.get('ThresholdInformation').success
        except PSAAPIError as e:
            logger.error(f'Connection test failed: {e}')
            return False

    @staticmethod
    def resolve_zone(username: str, timeout: int = 30) -> Dict[str, Any]:
        """Look up the zone that hosts an API user.

        Args:
            username: API user name

        Returns:
            Zone information with ``url`` and ``webUrl``

        Raises:
            PSANotFoundError: If the user has no zone
        """
        try:
            response = requests.get(
                ZONE_LOOKUP_URL, params={'user': username}, timeout=timeout
            )
        except requests.RequestException as e:
            raise PSAAPIError(f'Network error: {e}')

        if response.status_code == 404 or not response.content:
            raise PSANotFoundError(f'No zone found for user {username}')
        if response.status_code >= 400:
            raise PSAAPIError(
                f'HTTP {response.status_code}: {response.text}',
                status_code=response.status_code,
            )
        return response.json()

    def close(self):
        """Close the client session."""
        self.session.close()
        logger.info('PSA client session closed')

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


class PSAClientFactory:
    """Factory for creating PSA API clients."""

    @staticmethod
    def create_client(config: PSAInstanceConfig) -> PSAClient:
        """Create PSA client from configuration.

        Raises:
            PSAAuthenticationError: If credentials are incomplete
        """
        if not (config.username and config.secret and config.integration_code):
            raise PSAAuthenticationError(
                'username, secret and integration_code must all be provided'
            )

        return PSAClient(config)
