"""Base service with retry, timeout and error-conversion behavior."""

from gworkspace_auth.services.base import GoogleService

__all__ = ["GoogleService"]
