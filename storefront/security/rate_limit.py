from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


def client_ip_key(request: Request) -> str:
    """First ``x-forwarded-for`` hop when behind a proxy, else the peer address."""
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    return get_remote_address(request)


limiter = Limiter(key_func=client_ip_key)
