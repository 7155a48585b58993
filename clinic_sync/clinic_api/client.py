# clinic_sync/clinic_api/client.py
#
#
# Imports
import json
import logging
from typing import Optional, Dict, Any
#
# 3rd-party Libraries
import httpx
#
# Local Imports
from clinic_sync.Constants import HEALTH_CHECK_TIMEOUT, REQUEST_TIMEOUT
from .schemas import ChangesPage, Record, unwrap_record
from .exceptions import APIConnectionError, APIResponseError, APITimeoutError, error_for_status
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


class ClinicAPIClient:
    """
    Async REST client for the clinic server's per-entity endpoints.

    Every failure is raised as a `ClinicAPIError` subclass so callers can classify it:
    transport/timeout (retry later), 4xx (non-retryable), 5xx (retry later).
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = REQUEST_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _send(self, method: str, endpoint: str, json_data: Optional[Dict[str, Any]] = None,
                    params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None,
                    headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        client = await self._get_client()
        url = f"{self.base_url}{endpoint}"
        request_timeout = timeout if timeout is not None else self.timeout
        try:
            return await client.request(method, endpoint, json=json_data, params=params,
                                        headers=headers, timeout=request_timeout)
        except httpx.TimeoutException as e:
            raise APITimeoutError(f"Timed out after {request_timeout}s calling {method} {url}: {e}") from e
        except httpx.RequestError as e:  # ConnectError, ReadError, ...
            raise APIConnectionError(f"Connection error to {url}: {e}") from e

    async def _request(self, method: str, endpoint: str, json_data: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> Any:
        response = await self._send(method, endpoint, json_data=json_data, params=params, headers=headers)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_detail = e.response.reason_phrase or str(e)
            response_data = None
            try:
                response_data = e.response.json()
                if isinstance(response_data, dict):
                    detail = response_data.get("detail") or response_data.get("message") or response_data.get("error")
                    if isinstance(detail, str):
                        error_detail = detail
                    elif isinstance(detail, list) and detail:
                        error_detail = "; ".join(str(d) for d in detail)
            except ValueError:
                pass
            logger.debug(f"{method} {endpoint} failed with {e.response.status_code}: {error_detail}")
            raise error_for_status(e.response.status_code, error_detail, response_data if isinstance(response_data, dict) else None) from e

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise APIResponseError(response.status_code, "Failed to decode JSON response",
                                   response_data={"raw_text": response.text}) from e

    @staticmethod
    def _record_path(endpoint: str, record_id: str) -> str:
        return f"{endpoint.rstrip('/')}/{record_id}"

    # --- Health ---
    async def health(self, path: str = "/health", timeout: float = HEALTH_CHECK_TIMEOUT) -> int:
        """
        Calls the health endpoint and returns the HTTP status code.

        Any status (including 4xx/5xx) means the server answered; only transport
        failures raise (`APIConnectionError` / `APITimeoutError`).
        """
        response = await self._send("GET", path, timeout=timeout)
        return response.status_code

    # --- Entity endpoints ---
    async def list_records(self, endpoint: str, since: Optional[str] = None) -> ChangesPage:
        params = {"since": since} if since else None
        payload = await self._request("GET", endpoint, params=params)
        try:
            return ChangesPage.from_response(payload)
        except ValueError as e:
            raise APIResponseError(200, f"Malformed list response from {endpoint}: {e}") from e

    async def get_record(self, endpoint: str, record_id: str) -> Record:
        payload = await self._request("GET", self._record_path(endpoint, record_id))
        record = unwrap_record(payload)
        if record is None:
            raise APIResponseError(200, f"Expected a record from GET {endpoint}/{record_id}")
        return record

    async def create_record(self, endpoint: str, data: Dict[str, Any], idempotency_key: Optional[str] = None) -> Record:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        payload = await self._request("POST", endpoint, json_data=data, headers=headers)
        record = unwrap_record(payload)
        if record is None or "id" not in record:
            raise APIResponseError(200, f"Create on {endpoint} returned no record id")
        return record

    async def update_record(self, endpoint: str, record_id: str, patch: Dict[str, Any]) -> Optional[Record]:
        payload = await self._request("PATCH", self._record_path(endpoint, record_id), json_data=patch)
        return unwrap_record(payload)

    async def delete_record(self, endpoint: str, record_id: str) -> None:
        await self._request("DELETE", self._record_path(endpoint, record_id))

#
# End of clinic_sync/clinic_api/client.py
#######################################################################################################################
