"""
Authentication package for the TaskFlow session client.

This package contains session-related functionality including credential
storage, the session state machine, single-flight credential renewal, the
proactive renewal and inactivity timers, and the session manager facade.
"""

from .session_manager import SessionManager
from .token_storage import CredentialStore, StorageSlot

__all__ = ['SessionManager', 'CredentialStore', 'StorageSlot']
