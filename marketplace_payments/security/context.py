"""Per-request data the security checks operate on."""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class RequestContext:
    """Caller identity and request metadata extracted by the API layer."""

    ip_address: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def caller_key(self) -> str:
        """Rate-limit identity: the user when authenticated, otherwise the IP."""
        return self.user_id or self.ip_address or "anonymous"

    def event_fields(self) -> Dict[str, Any]:
        """Fields shared by every security event raised for this request."""
        return {
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "endpoint": self.endpoint,
            "method": self.method,
        }
