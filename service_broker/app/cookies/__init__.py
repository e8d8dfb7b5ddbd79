"""
Cookie handling for the broker.

Parses raw upstream Set-Cookie values into a name-keyed jar and renders it
back into a Cookie request header.
"""

from .jar import (
    Cookie,
    CookieJar,
    EXPIRED_SENTINEL,
    expire_set_cookie,
    filter_set_cookies,
    format_set_cookie,
)

__all__ = [
    "Cookie",
    "CookieJar",
    "EXPIRED_SENTINEL",
    "expire_set_cookie",
    "filter_set_cookies",
    "format_set_cookie",
]
