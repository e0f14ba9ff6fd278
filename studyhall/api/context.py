"""Unified application context for API requests.

Combines the signed-in user, request metadata and a contextual logger into a
single injectable dependency.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from studyhall.core.logging import ContextualLogger


class ApiContext(BaseModel):
    """Unified context for API requests."""

    model_config = ConfigDict(arbitrary_types_allowed=True)  # For ContextualLogger

    # Request metadata
    request_id: str

    # Authentication context
    user_id: str
    auth_method: str  # "clerk" or "disabled"
    auth_metadata: Optional[Dict[str, Any]] = None

    # Contextual logger with all dimensions pre-configured
    logger: ContextualLogger

    @property
    def is_dev_user(self) -> bool:
        """Whether authentication is disabled and the request runs as the dev user."""
        return self.auth_method == "disabled"

    def __str__(self) -> str:
        """String representation for logging."""
        return (
            f"ApiContext(request_id={self.request_id[:8]}..., "
            f"method={self.auth_method}, user={self.user_id})"
        )
