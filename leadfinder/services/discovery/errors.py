"""Shared error classes for the discovery pipeline and its stores."""

from __future__ import annotations


class DiscoveryError(RuntimeError):
    """Base exception raised by the discovery pipeline."""

    def __init__(self, message: str, code: str = "DISCOVERY_ERROR") -> None:
        super().__init__(message)
        self.code = code


class DiscoveryConfigurationError(DiscoveryError):
    """Raised when a required collaborator or credential is missing."""


class DiscoveryPersistenceError(DiscoveryError):
    """Raised when a store fails to save or load records."""


class RequestAlreadyFinalizedError(DiscoveryError):
    """Raised when a discovery request is finalized a second time."""
