"""Request-scoped dependencies: container lookup, caller identity and security pipelines."""
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Depends, Request, Response

from marketplace_payments.config import Settings
from marketplace_payments.container import Container
from marketplace_payments.core.exceptions import AuthenticationError, SecurityPolicyError
from marketplace_payments.security.context import RequestContext


def get_container(request: Request) -> Container:
    """Components built at startup."""
    return request.app.state.container


def client_ip(request: Request, settings: Settings) -> Optional[str]:
    """
    Resolve the caller's IP.

    X-Forwarded-For is honoured only behind a trusted proxy.
    """
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_current_user_id(
    request: Request, container: Container = Depends(get_container)
) -> str:
    """
    Authenticated user id, set by the upstream auth gateway.

    Raises:
        AuthenticationError: If the identity header is missing
    """
    user_id = request.headers.get(container.settings.user_id_header)
    if not user_id:
        raise AuthenticationError("Authentication required")
    return user_id


async def require_admin(
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
) -> str:
    """
    Caller id, if listed in `admin_user_ids`.

    Raises:
        SecurityPolicyError: 403 for every other caller
    """
    if user_id not in container.settings.get_admin_user_ids():
        raise SecurityPolicyError("Admin access required", error_code="forbidden")
    return user_id


async def _json_body(request: Request) -> Dict[str, Any]:
    if request.method not in ("POST", "PUT", "PATCH"):
        return {}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def build_request_context(
    request: Request, user_id: Optional[str], settings: Settings
) -> RequestContext:
    return RequestContext(
        ip_address=client_ip(request, settings),
        user_id=user_id,
        user_agent=request.headers.get("user-agent"),
        endpoint=request.url.path,
        method=request.method,
        body=await _json_body(request),
    )


def security_pipeline(name: str) -> Callable[..., Awaitable[RequestContext]]:
    """
    Dependency running the named security pipeline before the handler.

    Rate-limit headers are copied onto the response.
    """

    async def dependency(
        request: Request,
        response: Response,
        user_id: str = Depends(get_current_user_id),
        container: Container = Depends(get_container),
    ) -> RequestContext:
        ctx = await build_request_context(request, user_id, container.settings)
        headers = await getattr(container.pipelines, name).run(ctx)
        for key, value in headers.items():
            response.headers[key] = value
        return ctx

    return dependency


payment_security = security_pipeline("payment")
stk_push_security = security_pipeline("stk_push")
refund_security = security_pipeline("refund")
