"""
Custom exception hierarchy for fulfillment provider sync.

Exception Hierarchy:
    ProviderError (base)
    ├── ProviderConnectionError  - Network/timeout issues (recoverable)
    ├── ProviderAuthError        - Credentials rejected or token missing
    ├── ProviderAPIError         - API returned error response
    └── ProviderDataError        - Invalid response structure

    UnknownProviderError         - Provider key has no adapter
    ValidationError              - Input validation failed
    QueryTimeoutError            - Store query exceeded its deadline
    SyncInProgressError          - Reentrancy guard refused a run
    AccountNotFoundError         - Unknown warehouse account id
"""


class ProviderError(Exception):
    """Base exception for all provider-related errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ProviderConnectionError(ProviderError):
    """
    Network-related errors (timeout, connection refused, etc.).

    These are typically recoverable with retry.
    """

    def __init__(self, message: str, details: str = None, retry_after: int = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class ProviderAuthError(ProviderError):
    """Provider rejected the account credentials or returned no token."""

    def __init__(self, message: str, details: str = None, provider: str = None):
        super().__init__(message, details)
        self.provider = provider


class ProviderAPIError(ProviderError):
    """
    API returned an error response.

    Check status_code for specifics.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class ProviderDataError(ProviderError):
    """
    API response has unexpected structure.

    The provider returned data in a format we don't understand.
    """

    def __init__(self, message: str, details: str = None, expected: str = None, got: str = None):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


class UnknownProviderError(ProviderError):
    """No adapter is registered for the provider key."""

    def __init__(self, provider_key: str):
        super().__init__("Unsupported provider", provider_key)
        self.provider_key = provider_key


class ValidationError(Exception):
    """
    Input validation failed.

    Used for credential blobs and operator input before processing.
    """

    def __init__(self, field: str, message: str, value: any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"


class QueryTimeoutError(Exception):
    """Database query exceeded timeout."""

    def __init__(self, query: str, timeout: float, details: str = None):
        self.query = query[:200] + "..." if len(query) > 200 else query
        self.timeout = timeout
        self.details = details
        message = f"Query timed out after {timeout}s"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)

    def __str__(self) -> str:
        return f"QueryTimeoutError: Query timed out after {self.timeout}s - {self.query}"


class SyncInProgressError(Exception):
    """A sync of the requested tier (or a blocking initial sync) is already running."""

    def __init__(self, sync_type: str, reason: str = None):
        self.sync_type = sync_type
        self.reason = reason or f"{sync_type} sync already running"
        super().__init__(self.reason)


class AccountNotFoundError(Exception):
    """No warehouse account exists with the given id."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Warehouse account not found: {account_id}")
