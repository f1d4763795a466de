"""
Rate limit key generators.

Each takes the incoming request and returns the identity the limiter counts
against.
"""

from typing import Callable, Dict

from fastapi import Request

from service_bridge.app.auth.tokens import extract_token, token_fingerprint

KeyGenerator = Callable[[Request], str]


def client_ip_key(request: Request) -> str:
    """Direct peer address. Default strategy."""
    return request.client.host if request.client else "unknown"


def forwarded_ip_key(request: Request) -> str:
    """First address from proxy headers, falling back to the peer address."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if isinstance(forwarded_for, str) and forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if isinstance(real_ip, str) and real_ip:
        return real_ip

    return client_ip_key(request)


def token_key(request: Request) -> str:
    """Fingerprint of the bearer credential, or the peer address when there is none."""
    token = extract_token(request.headers)
    if token:
        return f"token:{token_fingerprint(token)}"
    return client_ip_key(request)


KEY_STRATEGIES: Dict[str, KeyGenerator] = {
    "ip": client_ip_key,
    "forwarded": forwarded_ip_key,
    "token": token_key,
}


def get_key_generator(strategy: str) -> KeyGenerator:
    try:
        return KEY_STRATEGIES[strategy]
    except KeyError:
        raise ValueError(f"Unknown rate limit key strategy: {strategy}") from None
