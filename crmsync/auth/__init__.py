"""JWT authentication module."""

from crmsync.auth.dependencies import get_current_user_id
from crmsync.auth.jwt import (
    create_access_token,
    create_state_token,
    decode_access_token,
    decode_state_token,
)

__all__ = [
    "create_access_token",
    "create_state_token",
    "decode_access_token",
    "decode_state_token",
    "get_current_user_id",
]
