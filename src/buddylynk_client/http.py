"""
Async HTTP client for the Buddylynk REST API.

Built on httpx with:
- Bearer token authentication
- Error responses mapped to the client exception hierarchy
- Retries for transient network failures
"""

import logging
from typing import Any, Dict, Iterable, Optional, Union

import httpx
from pydantic import BaseModel

from buddylynk_client.exceptions import (
    BuddylynkClientError,
    NetworkError,
    RateLimitError,
    exception_from_response,
)
from buddylynk_types.messages import ConversationRead, MessageCreate, MessageGet, UnreadCount
from buddylynk_types.presence import OnlineStatusQuery, OnlineStatusResponse, PresenceRecord

logger = logging.getLogger(__name__)


class TokenAuthProvider:
    """Holds the bearer token issued by the login system."""

    def __init__(self, access_token: Optional[str] = None):
        self._access_token = access_token

    async def get_access_token(self) -> Optional[str]:
        return self._access_token

    def is_authenticated(self) -> bool:
        return self._access_token is not None

    def set_token(self, access_token: str) -> None:
        self._access_token = access_token

    def clear_token(self) -> None:
        self._access_token = None


class AsyncHTTPClient:
    """
    Async HTTP client for Buddylynk API requests.

    This client handles:
    - Base URL management
    - Authentication header injection
    - Response parsing and error handling
    - Retries for connection failures and timeouts
    """

    def __init__(
        self,
        base_url: str,
        auth_provider: Optional[TokenAuthProvider] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the HTTP client.

        Args:
            base_url: Base URL for the API (e.g., "http://localhost:8000")
            auth_provider: Token holder used for the Authorization header
            timeout: Request timeout in seconds
            max_retries: Maximum number of attempts for network failures
            transport: Custom httpx transport (mock transports in tests)
        """
        self.base_url = base_url.rstrip("/")
        self.auth_provider = auth_provider or TokenAuthProvider()
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the underlying httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AsyncHTTPClient":
        await self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _build_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.auth_provider.is_authenticated():
            token = await self.auth_provider.get_access_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    def _handle_error_response(self, response: httpx.Response) -> None:
        """Convert HTTP error responses to appropriate exceptions."""
        status_code = response.status_code

        try:
            error_data = response.json()
            detail = error_data.get("message") or error_data.get("detail") or str(error_data)
            error_code = error_data.get("error_code")
        except ValueError:
            detail = response.text or f"HTTP {status_code}"
            error_code = None

        if status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                detail,
                error_code=error_code,
                retry_after=int(retry_after) if retry_after else None,
            )

        raise exception_from_response(status_code, detail, error_code=error_code)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Union[Dict[str, Any], BaseModel]] = None,
    ) -> httpx.Response:
        """
        Make an HTTP request.

        Raises:
            BuddylynkClientError: On HTTP errors
            NetworkError: On connection failures after all retries
        """
        client = await self._get_client()
        headers = await self._build_headers()

        if json_data is not None and isinstance(json_data, BaseModel):
            json_data = json_data.model_dump(mode="json", exclude_none=True)

        if params:
            params = {k: v for k, v in params.items() if v is not None}

        last_exception: Optional[BuddylynkClientError] = None
        for attempt in range(self.max_retries):
            try:
                response = await client.request(
                    method=method,
                    url=path,
                    params=params,
                    json=json_data,
                    headers=headers,
                )
            except httpx.TimeoutException as e:
                last_exception = NetworkError(f"Request timed out: {e}")
                logger.debug(f"{method} {path} timed out (attempt {attempt + 1}/{self.max_retries})")
                continue
            except httpx.TransportError as e:
                last_exception = NetworkError(f"Connection failed: {e}")
                logger.debug(f"{method} {path} failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                continue

            if response.is_success:
                return response
            self._handle_error_response(response)

        if last_exception:
            raise last_exception
        raise NetworkError("Request failed after retries")


class BuddylynkClient:
    """
    Typed access to the REST endpoints the realtime layer relies on.

    Example:
        >>> async with BuddylynkClient("http://localhost:8000", token) as api:
        ...     statuses = await api.online_status(["u1", "u2"])
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.http = AsyncHTTPClient(
            base_url,
            auth_provider=TokenAuthProvider(access_token),
            timeout=timeout,
            max_retries=max_retries,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self.http.base_url

    async def close(self) -> None:
        await self.http.close()

    async def __aenter__(self) -> "BuddylynkClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Presence

    async def online_status(self, user_ids: Iterable[str]) -> Dict[str, Optional[bool]]:
        """Presence snapshot; ``None`` means unknown."""
        query = OnlineStatusQuery(user_ids=list(user_ids))
        response = await self.http.request("POST", "/users/online-status", json_data=query)
        return OnlineStatusResponse.model_validate(response.json()).statuses

    async def user_online_status(self, user_id: str) -> PresenceRecord:
        response = await self.http.request("GET", f"/users/{user_id}/online-status")
        return PresenceRecord.model_validate(response.json())

    # Messages

    async def send_message(self, receiver_id: str, content: str) -> MessageGet:
        payload = MessageCreate(receiver_id=receiver_id, content=content)
        response = await self.http.request("POST", "/messages", json_data=payload)
        return MessageGet.model_validate(response.json())

    async def mark_conversation_read(self, peer_id: str) -> ConversationRead:
        response = await self.http.request("POST", f"/messages/conversations/{peer_id}/read")
        return ConversationRead.model_validate(response.json())

    async def get_unread_count(self) -> int:
        response = await self.http.request("GET", "/messages/unread-count")
        return UnreadCount.model_validate(response.json()).count

    async def sync_unread_count(self) -> int:
        """Recompute the unread count on the server (idempotent)."""
        response = await self.http.request("POST", "/messages/unread-count/sync")
        return UnreadCount.model_validate(response.json()).count
