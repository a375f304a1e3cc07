from slowapi import Limiter
from slowapi.util import get_remote_address

from moneytree.core.config import settings

# Redis-backed unless RATE_LIMIT_STORAGE_URI overrides it
limiter = Limiter(key_func=get_remote_address, storage_uri=settings.limiter_storage_uri)
