from flask import request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."

# Storage and on/off switch come from RATELIMIT_STORAGE_URI / RATELIMIT_ENABLED.
limiter = Limiter(get_remote_address, strategy="fixed-window")

POST_ACTION_LIMIT = "5 per minute"
LOGIN_LIMIT = "5 per 5 minutes"


def post_rate_key() -> str:
    """Like/view limits are shared by every visitor of the same post."""
    post_id = (request.view_args or {}).get("post_id")
    return f"post:{post_id}"
