"""
Core interfaces for the TaskFlow session client.

This module defines the abstract interfaces that components must implement
to ensure consistent behavior across the client.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

from .models import AuthGrant, CredentialPair, LoginCredentials, RegistrationData, User


class IAuthAPI(ABC):
    """Server endpoints consumed by the session facade."""

    @abstractmethod
    async def login(self, credentials: LoginCredentials) -> AuthGrant:
        """Issue credentials for an existing account."""
        pass

    @abstractmethod
    async def register(self, data: RegistrationData) -> AuthGrant:
        """Create an account and issue credentials for it."""
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> AuthGrant:
        """Exchange a refresh token for a new credential pair."""
        pass

    @abstractmethod
    async def logout(self, credentials: CredentialPair) -> None:
        """Invalidate the session on the server."""
        pass

    @abstractmethod
    async def update_profile(self, updates: Dict[str, Any]) -> User:
        """Update the signed-in user's profile."""
        pass

    @abstractmethod
    async def change_password(self, current_password: str, new_password: str) -> None:
        """Change the signed-in user's password."""
        pass


class IKeyValueStorage(ABC):
    """String key/value persistence backend."""

    name: str = "storage"

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value."""
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a value; missing keys are ignored."""
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_server_url(self) -> str:
        """Get server URL."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass
