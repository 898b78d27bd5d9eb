"""Authentication and resilient request execution for Google Workspace.

Service account and OAuth2 providers, secure token storage, and a retry
executor with backoff and timeouts for wrapping Google API calls.
"""

from gworkspace_auth.__version__ import __version__

__all__ = ["__version__"]
