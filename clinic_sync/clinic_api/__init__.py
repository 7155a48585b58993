# clinic_sync/clinic_api/__init__.py
from .client import ClinicAPIClient
from .exceptions import (
    ClinicAPIError, APIConnectionError, APITimeoutError,
    APIResponseError, APIClientError, APINotFoundError,
    AuthenticationError, APIServerError
)
from .schemas import ChangesPage, Record

__all__ = [
    "ClinicAPIClient",
    "ClinicAPIError", "APIConnectionError", "APITimeoutError",
    "APIResponseError", "APIClientError", "APINotFoundError",
    "AuthenticationError", "APIServerError",
    "ChangesPage", "Record",
]
