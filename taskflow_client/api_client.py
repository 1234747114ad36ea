"""
HTTP API Client for the TaskFlow session client.

This module provides HTTP client functionality for communicating with the
TaskFlow API, including the authentication endpoints consumed by the session
manager, bearer-token requests with 401 recovery, and retry logic.
"""

import asyncio
import json
import logging
import random
from typing import Optional, Dict, Any, TYPE_CHECKING

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic import ValidationError as PydanticValidationError

from taskflow_shared.exceptions import APIError, NetworkError, ErrorCode
from taskflow_shared.interfaces import IAuthAPI
from taskflow_shared.models import (
    AuthGrant, CredentialPair, LoginCredentials, RegistrationData, User
)

if TYPE_CHECKING:
    from taskflow_client.auth.session_manager import SessionManager

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt + 1``."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


# Wire schemas

class UserPayload(BaseModel):
    """User object as returned by the auth endpoints."""
    model_config = ConfigDict(extra='allow', populate_by_name=True)

    id: str
    email: str
    first_name: Optional[str] = Field(default=None, validation_alias=AliasChoices('first_name', 'firstName'))
    last_name: Optional[str] = Field(default=None, validation_alias=AliasChoices('last_name', 'lastName'))
    display_name: Optional[str] = Field(default=None, validation_alias=AliasChoices('display_name', 'displayName'))

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v):
        if v is None or v == "":
            raise ValueError("User ID cannot be empty")
        return str(v)

    def to_user(self) -> User:
        # Nulls fall back to the model defaults
        data = {key: value for key, value in self.model_dump().items() if value is not None}
        return User.from_dict(data)


class GrantPayload(BaseModel):
    """Credential grant returned by login, register and refresh."""
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    access_token: str = Field(validation_alias=AliasChoices('access_token', 'accessToken', 'token'))
    refresh_token: str = Field(validation_alias=AliasChoices('refresh_token', 'refreshToken'))
    expires_in: int = Field(default=3600, validation_alias=AliasChoices('expires_in', 'expiresIn'))
    token_type: str = Field(default="Bearer", validation_alias=AliasChoices('token_type', 'tokenType'))
    user: Optional[UserPayload] = None

    @field_validator('access_token', 'refresh_token')
    @classmethod
    def validate_token(cls, v):
        if not v or not v.strip():
            raise ValueError('Token cannot be empty')
        return v

    @field_validator('expires_in')
    @classmethod
    def validate_expires_in(cls, v):
        if v <= 0:
            raise ValueError('Token lifetime must be positive')
        return v

    def to_grant(self) -> AuthGrant:
        return AuthGrant(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_in=self.expires_in,
            token_type=self.token_type,
            user=self.user.to_user() if self.user else None
        )


class TaskflowAPIClient(IAuthAPI):
    """
    HTTP API client for the TaskFlow server.

    Authenticated requests carry the session's bearer token. Once a session
    manager is attached, a 401 on such a request is recovered through the
    manager's renewal coordinator and the request is replayed once.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None
    ):
        self.server_url = server_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.retry_config = retry_config or RetryConfig()

        self._session: Optional[ClientSession] = None
        self._session_manager: Optional['SessionManager'] = None

        logger.info(f"API client initialized for server: {server_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def attach_session(self, session_manager: 'SessionManager') -> None:
        """Use ``session_manager`` for bearer tokens and 401 recovery."""
        self._session_manager = session_manager

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': 'TaskflowClient/1.0',
                    'Content-Type': 'application/json'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _build_url(self, endpoint: str) -> str:
        return f"{self.server_url}/{endpoint.lstrip('/')}"

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        retry: bool = True
    ) -> Any:
        """
        Make HTTP request with retry logic and error handling.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            endpoint: API endpoint path
            data: Request body data
            params: Query parameters
            token: Bearer token to send, if any
            retry: Whether to retry on network failure

        Returns:
            The ``data`` member of the response envelope, or the whole body
            when the server does not wrap it

        Raises:
            APIError: Non-success response
            NetworkError: Server unreachable after all retries
        """
        await self._ensure_session()

        url = self._build_url(endpoint)
        headers = {'Authorization': f'Bearer {token}'} if token else {}

        max_attempts = (self.retry_config.max_retries if retry else 0) + 1
        last_exception: Optional[BaseException] = None

        for attempt in range(max_attempts):
            try:
                logger.debug(f"Making {method} request to {url} (attempt {attempt + 1})")

                async with self._session.request(
                    method=method,
                    url=url,
                    json=data,
                    params=params,
                    headers=headers
                ) as response:
                    body = await response.text()
                    return self._handle_response(method, url, response.status, body)

            except (ClientError, asyncio.TimeoutError, OSError) as e:
                last_exception = e
                logger.warning(f"Network error on attempt {attempt + 1}: {e}")

                if attempt + 1 < max_attempts:
                    delay = self.retry_config.delay_for(attempt)
                    logger.info(f"Retrying in {delay:.1f} seconds...")
                    await asyncio.sleep(delay)

        raise NetworkError(
            f"Network request failed after {max_attempts} attempts: {last_exception}",
            error_code=(
                ErrorCode.NETWORK_TIMEOUT
                if isinstance(last_exception, asyncio.TimeoutError)
                else ErrorCode.NETWORK_CONNECTION_FAILED
            ),
            context={'url': url, 'method': method},
            cause=last_exception
        ) from last_exception

    def _handle_response(self, method: str, url: str, status: int, body: str) -> Any:
        """Unwrap the response envelope or raise ``APIError``."""
        try:
            payload = json.loads(body) if body.strip() else {}
        except ValueError:
            payload = None

        if 200 <= status < 300:
            if payload is None:
                raise APIError(
                    f"Malformed response from {method} {url}",
                    status_code=status,
                    error_code=ErrorCode.API_MALFORMED_RESPONSE
                )
            if isinstance(payload, dict) and 'success' in payload:
                if not payload['success']:
                    raise self._error_from_payload(status, payload, "Request failed")
                return payload.get('data')
            return payload

        if not isinstance(payload, dict):
            payload = {'message': body.strip() or None}

        default_messages = {
            401: 'Unauthorized',
            403: 'Access denied',
            404: 'Resource not found',
        }
        default = default_messages.get(
            status,
            'Internal server error' if status >= 500 else 'Unknown error'
        )
        error = self._error_from_payload(status, payload, default)
        logger.debug(f"{method} {url} failed ({status}): {error.message}")
        raise error

    @staticmethod
    def _error_from_payload(status: int, payload: Dict[str, Any], default: str) -> APIError:
        error_info = payload.get('error') if isinstance(payload.get('error'), dict) else {}
        message = (
            payload.get('message')
            or error_info.get('message')
            or payload.get('detail')
            or default
        )
        return APIError(
            message,
            status_code=status,
            server_code=payload.get('code') or error_info.get('code'),
            details=payload.get('details') or error_info.get('details')
        )

    async def _authorized_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Request carrying the session's bearer token, recovered once on 401."""
        manager = self._session_manager
        if manager is None:
            return await self._make_request(method, endpoint, data=data, params=params)

        async def send(token: Optional[str]) -> Any:
            return await self._make_request(method, endpoint, data=data, params=params, token=token)

        return await manager.coordinator.dispatch(
            send,
            manager.get_access_token(),
            renewable=manager.can_refresh()
        )

    @staticmethod
    def _parse_grant(data: Any) -> AuthGrant:
        try:
            return GrantPayload.model_validate(data).to_grant()
        except PydanticValidationError as e:
            raise APIError(
                f"Malformed credential grant: {e.error_count()} validation error(s)",
                status_code=200,
                error_code=ErrorCode.API_MALFORMED_RESPONSE,
                details=e.errors(include_url=False),
                cause=e
            ) from e

    @staticmethod
    def _parse_user(data: Any) -> User:
        try:
            return UserPayload.model_validate(data).to_user()
        except PydanticValidationError as e:
            raise APIError(
                f"Malformed user payload: {e.error_count()} validation error(s)",
                status_code=200,
                error_code=ErrorCode.API_MALFORMED_RESPONSE,
                details=e.errors(include_url=False),
                cause=e
            ) from e

    # Authentication endpoints

    async def login(self, credentials: LoginCredentials) -> AuthGrant:
        logger.info(f"Logging in as {credentials.email}")
        data = await self._make_request('POST', '/auth/login', data=credentials.to_payload())
        return self._parse_grant(data)

    async def register(self, data: RegistrationData) -> AuthGrant:
        logger.info(f"Registering account {data.email}")
        response = await self._make_request('POST', '/auth/register', data=data.to_payload())
        return self._parse_grant(response)

    async def refresh_token(self, refresh_token: str) -> AuthGrant:
        data = await self._make_request('POST', '/auth/refresh', data={'refreshToken': refresh_token})
        return self._parse_grant(data)

    async def logout(self, credentials: CredentialPair) -> None:
        await self._make_request(
            'POST',
            '/auth/logout',
            data={'refreshToken': credentials.refresh_token},
            token=credentials.access_token,
            retry=False
        )

    async def get_current_user(self) -> User:
        data = await self._authorized_request('GET', '/auth/me')
        if isinstance(data, dict) and 'user' in data:
            data = data['user']
        return self._parse_user(data)

    async def update_profile(self, updates: Dict[str, Any]) -> User:
        data = await self._authorized_request('PUT', '/auth/profile', data=updates)
        if isinstance(data, dict) and 'user' in data:
            data = data['user']
        return self._parse_user(data)

    async def change_password(self, current_password: str, new_password: str) -> None:
        await self._authorized_request(
            'POST',
            '/auth/change-password',
            data={'currentPassword': current_password, 'newPassword': new_password}
        )

    # Resource requests

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._authorized_request('GET', endpoint, params=params)

    async def post(self, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Any:
        return await self._authorized_request('POST', endpoint, data=data)

    async def put(self, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Any:
        return await self._authorized_request('PUT', endpoint, data=data)

    async def patch(self, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Any:
        return await self._authorized_request('PATCH', endpoint, data=data)

    async def delete(self, endpoint: str) -> Any:
        return await self._authorized_request('DELETE', endpoint)
