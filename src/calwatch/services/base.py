"""Request issuer interface used by every component that talks to the API."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ..exceptions import RemoteRejection, SyncTokenInvalidError


@dataclass
class ApiResponse:
    """Status code and decoded body of one HTTP exchange."""

    status_code: int
    payload: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def raise_for_status(self) -> "ApiResponse":
        """Turn a non-2xx response into a RemoteRejection.

        Google wraps failures as ``{"error": {"code", "message", "errors": [{"reason"}]}}``;
        the message is carried verbatim.

        Raises:
            SyncTokenInvalidError: On HTTP 410
            RemoteRejection: On any other non-2xx status
        """
        if self.ok:
            return self

        message = f"HTTP {self.status_code}"
        reason = None
        error = self.payload.get('error') if isinstance(self.payload, dict) else None
        if isinstance(error, dict):
            message = error.get('message') or message
            details = error.get('errors') or []
            if details and isinstance(details[0], dict):
                reason = details[0].get('reason')
        elif isinstance(error, str):
            message = error
        elif isinstance(self.payload, str) and self.payload:
            message = self.payload

        if self.status_code == 410:
            raise SyncTokenInvalidError(self.status_code, message, reason)
        raise RemoteRejection(self.status_code, message, reason)


class BaseRequestIssuer(ABC):
    """Pre-authenticated capability that performs one HTTP call."""

    @abstractmethod
    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        json: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> ApiResponse:
        """Issue a request relative to the API base URL.

        Args:
            method: HTTP method
            path: Path relative to the API base URL
            params: Query parameters
            json: JSON request body
            headers: Extra request headers

        Returns:
            The response, whatever its status code

        Raises:
            TransportError: If the request could not be issued
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass
