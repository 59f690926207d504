from slowapi import Limiter
from slowapi.util import get_remote_address

# Per-client request limiter for the public webhook routes
limiter = Limiter(key_func=get_remote_address)
