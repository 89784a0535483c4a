import logging

from fastapi import Request
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from . import config
from .errors import TooManyRequests

logger = logging.getLogger(__name__)

storage = MemoryStorage()
limiter = MovingWindowRateLimiter(storage)
login_limit = parse(config.LOGIN_RATE_LIMIT)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def limit_login(request: Request):
    """Dependency for the login route: counts every attempt per client IP."""
    ip = client_ip(request)
    if not limiter.hit(login_limit, "login", ip):
        logger.warning("Login rate limit exceeded for %s", ip)
        raise TooManyRequests()


def reset():
    storage.reset()
