# clinic_sync/clinic_api/exceptions.py
#
#
#######################################################################################################################
#
# Functions:

class ClinicAPIError(Exception):
    """Base exception for clinic_api errors."""

    retryable = False


class APIConnectionError(ClinicAPIError):
    """Raised when no HTTP response was received (connect failure, DNS, reset)."""

    retryable = True


class APITimeoutError(APIConnectionError):
    """Raised when the request did not complete within its timeout."""
    pass


class APIResponseError(ClinicAPIError):
    """Raised for non-2xx responses or issues parsing the response."""
    def __init__(self, status_code: int, message: str, response_data: dict = None):
        super().__init__(f"API Error {status_code}: {message}")
        self.status_code = status_code
        self.response_data = response_data or {}


class APIClientError(APIResponseError):
    """4xx: the request itself is wrong; retrying it unchanged will not help."""
    pass


class APINotFoundError(APIClientError):
    """404: the target record does not exist on the server."""
    pass


class AuthenticationError(APIClientError):
    """Raised for authentication failures (401/403)."""
    pass


class APIServerError(APIResponseError):
    """5xx: the server failed; safe to retry later."""

    retryable = True


def error_for_status(status_code: int, message: str, response_data: dict = None) -> APIResponseError:
    """Maps an HTTP status to the matching exception class."""
    if status_code == 404:
        return APINotFoundError(status_code, message, response_data)
    if status_code in (401, 403):
        return AuthenticationError(status_code, message, response_data)
    if 400 <= status_code < 500:
        return APIClientError(status_code, message, response_data)
    if status_code >= 500:
        return APIServerError(status_code, message, response_data)
    return APIResponseError(status_code, message, response_data)

#
# End of clinic_sync/clinic_api/exceptions.py
########################################################################################################################
