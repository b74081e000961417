from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import Dict, Optional
import hmac
import re
import html

# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address)

PUBLIC_READ_LIMIT = "60/minute"
AUTH_LIMIT = "5/minute"
CHECKOUT_LIMIT = "10/minute"

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data: https:; object-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response

# --- Input Sanitization ---
def sanitize_input(text: Optional[str]) -> Optional[str]:
    """
    Sanitize input string:
    - HTML escape
    - Strip whitespace
    """
    if not isinstance(text, str):
        return text

    return html.escape(text.strip())

def sanitize_mapping(values: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    """Sanitize both keys and values of a string map (product specifications)."""
    if values is None:
        return values
    return {sanitize_input(str(k)): sanitize_input(str(v)) for k, v in values.items()}

def validate_password_strength(password: str) -> bool:
    """
    Validate password strength:
    - Min 8 chars
    - At least one uppercase
    - At least one lowercase
    - At least one digit
    """
    if len(password) < 8:
        return False
    if not re.search(r"[A-Z]", password):
        return False
    if not re.search(r"[a-z]", password):
        return False
    if not re.search(r"\d", password):
        return False
    return True

def verify_webhook_hash(received: Optional[str], expected: str) -> bool:
    """Constant-time comparison of the gateway's ``verif-hash`` header."""
    if not received:
        return False
    return hmac.compare_digest(received.encode(), expected.encode())
