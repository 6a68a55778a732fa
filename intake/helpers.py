import os
import re
import secrets
from typing import Any, NamedTuple, Optional
from urllib.parse import parse_qs, urlsplit

import xxhash
from cachetools import LFUCache, cached
from fastapi import Request

MAX_URL_LENGTH = 500
MAX_EMAIL_LENGTH = 100
CANONICAL_WATCH_URL = "https://www.youtube.com/watch?v={video_id}"

ALLOWED_SCHEMES = {"http", "https"}
ALLOWED_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "youtu.be"}
SHORT_LINK_HOST = "youtu.be"

YOUTUBE_URL_PATTERN = re.compile(
    r"^https?://(www\.|m\.)?(youtube\.com/watch\?v=|youtu\.be/)[\w-]+([?&#].*)?$"
)
VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DISPOSABLE_EMAIL_DOMAINS = frozenset(
    {
        "10minutemail.com",
        "tempmail.org",
        "guerrillamail.com",
        "mailinator.com",
        "trash-mail.com",
        "temp-mail.org",
    }
    | {
        domain.strip().lower()
        for domain in os.getenv("DISPOSABLE_EMAIL_DOMAINS", "").split(",")
        if domain.strip()
    }
)

SECURITY_HEADERS = {
    "Content-Security-Policy": "; ".join(
        [
            "default-src 'self'",
            "script-src 'self'",
            "style-src 'self' 'unsafe-inline'",
            "img-src 'self' data: https:",
            "font-src 'self'",
            "connect-src 'self'",
            "frame-ancestors 'none'",
        ]
    ),
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), browsing-topics=()",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
    "X-DNS-Prefetch-Control": "on",
}


class CanonicalVideo(NamedTuple):
    video_id: str
    canonical_url: str


class URLCheckFailed(ValueError):
    pass


def matches_youtube_pattern(url: str) -> bool:
    """Shallow check used by the submission schema."""

    return bool(YOUTUBE_URL_PATTERN.match(url))


@cached(LFUCache(maxsize=1000))
def parse_youtube_url(url: str) -> CanonicalVideo:
    """Extract the video id and rebuild the canonical watch URL.

    Every query parameter other than the video id is dropped, so two links
    to the same video always produce the same canonical URL.
    """

    try:
        parsed = urlsplit(url)
        hostname = parsed.hostname
    except ValueError:
        raise URLCheckFailed("Malformed URL")

    if parsed.scheme not in ALLOWED_SCHEMES:
        raise URLCheckFailed("Unsupported protocol")
    if hostname not in ALLOWED_HOSTS:
        raise URLCheckFailed("Unsupported host")

    if hostname == SHORT_LINK_HOST:
        video_id = parsed.path[1:]
    else:
        if parsed.path != "/watch":
            raise URLCheckFailed("Unsupported path")
        video_id = parse_qs(parsed.query).get("v", [""])[0]

    if not VIDEO_ID_PATTERN.match(video_id):
        raise URLCheckFailed("Invalid video id")

    return CanonicalVideo(video_id, CANONICAL_WATCH_URL.format(video_id=video_id))


def email_domain(email: str) -> str:
    return email.rpartition("@")[2].lower()


def is_disposable_email(email: str) -> bool:
    return email_domain(email) in DISPOSABLE_EMAIL_DOMAINS


def check_email(email: str) -> Optional[str]:
    """Return an error message for an unacceptable email, None otherwise."""

    if not EMAIL_PATTERN.match(email):
        return "Invalid email format"
    if len(email) > MAX_EMAIL_LENGTH:
        return "Email address is too long"
    if is_disposable_email(email):
        return "Please use a regular email provider"
    return None


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def tokens_match(submitted: Any, expected: Any) -> bool:
    if not isinstance(submitted, str) or not isinstance(expected, str):
        return False
    if not submitted or not expected:
        return False
    return secrets.compare_digest(submitted.encode(), expected.encode())


def submission_key(client_ip: str, email: str, video_id: str) -> str:
    """Compact store key for one (ip, email, video) triple."""

    identity = f"{client_ip}-{email.lower()}-{video_id}"
    digest = xxhash.xxh64(identity.encode("utf-8")).hexdigest()
    return f"submission:{digest}"


def rate_limit_key(client_ip: str, email: Any) -> str:
    if not isinstance(email, str) or not email:
        email = "anonymous"
    return f"{client_ip}-{email}"


def get_client_ip(request: Request) -> str:
    """Socket peer address; forwarded headers are applied by ProxyHeadersMiddleware."""

    return request.client.host if request.client else "unknown"
