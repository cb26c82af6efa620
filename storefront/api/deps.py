from dataclasses import dataclass
from fastapi import Depends, HTTPException, Request

from storefront.auth_local import decode_access_token
from storefront.application.checkout import CheckoutService
from storefront.core.logging_config import set_request_context
from storefront.core_settings import get_settings
from storefront.infrastructure.db import SessionLocal, RetryPolicy

BEARER_PREFIX = "Bearer "

@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str = "CUSTOMER"

def get_current_user(request: Request) -> CurrentUser:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token_data = decode_access_token(auth_header[len(BEARER_PREFIX):])
    if not token_data or not token_data.get("sub"):
        raise HTTPException(status_code=401, detail="Unauthorized")
    user = CurrentUser(id=str(token_data["sub"]), role=token_data.get("role") or "CUSTOMER")
    set_request_context(user_id=user.id)
    return user

def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.role != "ADMIN":
        raise HTTPException(status_code=403, detail="Forbidden")
    return user

def get_checkout_service(request: Request) -> CheckoutService:
    settings = get_settings()
    return CheckoutService(
        session_factory=SessionLocal,
        gateway=request.app.state.payment_gateway,
        retry_policy=RetryPolicy.from_settings(),
        checkout_lock=request.app.state.checkout_lock,
        # Overall bound, a little above the HTTP client's own timeout
        gateway_timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS + 5,
    )
