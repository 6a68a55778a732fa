import re
from types import SimpleNamespace

import pytest
import xxhash

from intake.helpers import (
    DISPOSABLE_EMAIL_DOMAINS,
    URLCheckFailed,
    check_email,
    generate_csrf_token,
    get_client_ip,
    matches_youtube_pattern,
    parse_youtube_url,
    rate_limit_key,
    submission_key,
    tokens_match,
)

VIDEO_ID = "dQw4w9WgXcQ"
CANONICAL_URL = f"https://www.youtube.com/watch?v={VIDEO_ID}"


# Tests parse_youtube_url
@pytest.mark.parametrize(
    "url",
    [
        f"https://www.youtube.com/watch?v={VIDEO_ID}",
        f"https://youtube.com/watch?v={VIDEO_ID}&foo=bar",
        f"http://m.youtube.com/watch?list=PL123&v={VIDEO_ID}&t=42s",
        f"https://youtu.be/{VIDEO_ID}",
        f"https://youtu.be/{VIDEO_ID}?si=share-tracking",
    ],
)
def test_parse_youtube_url_canonicalizes(url):
    video = parse_youtube_url(url)
    assert video.video_id == VIDEO_ID
    assert video.canonical_url == CANONICAL_URL


def test_parse_youtube_url_strips_extra_params():
    video = parse_youtube_url("https://youtube.com/watch?v=XYZ_abc-123&foo=bar")
    assert video.canonical_url == "https://www.youtube.com/watch?v=XYZ_abc-123"


@pytest.mark.parametrize(
    "url, reason",
    [
        (f"ftp://youtube.com/watch?v={VIDEO_ID}", "Unsupported protocol"),
        (f"javascript://youtube.com/watch?v={VIDEO_ID}", "Unsupported protocol"),
        (f"https://vimeo.com/watch?v={VIDEO_ID}", "Unsupported host"),
        (f"https://youtube.com.evil.net/watch?v={VIDEO_ID}", "Unsupported host"),
        (f"https://www.youtube.com/embed/{VIDEO_ID}", "Unsupported path"),
        ("https://www.youtube.com/watch?v=short", "Invalid video id"),
        ("https://www.youtube.com/watch?feature=share", "Invalid video id"),
        (f"https://youtu.be/{VIDEO_ID}/extra", "Invalid video id"),
        ("https://youtu.be/", "Invalid video id"),
        ("not a url", "Unsupported protocol"),
    ],
)
def test_parse_youtube_url_rejects(url, reason):
    with pytest.raises(URLCheckFailed, match=reason):
        parse_youtube_url(url)


# Tests matches_youtube_pattern
@pytest.mark.parametrize(
    "url, expected",
    [
        (f"https://www.youtube.com/watch?v={VIDEO_ID}", True),
        (f"https://youtu.be/{VIDEO_ID}", True),
        (f"https://youtube.com/watch?v={VIDEO_ID}&t=10", True),
        ("https://www.youtube.com/watch?v=short", True),
        (f"https://vimeo.com/{VIDEO_ID}", False),
        (f"https://www.youtube.com/embed/{VIDEO_ID}", False),
        ("youtube.com/watch?v=dQw4w9WgXcQ", False),
    ],
)
def test_matches_youtube_pattern(url, expected):
    assert matches_youtube_pattern(url) is expected


# Tests check_email
@pytest.mark.parametrize("domain", sorted(DISPOSABLE_EMAIL_DOMAINS))
def test_check_email_rejects_disposable_domains(domain):
    assert check_email(f"someone@{domain}") == "Please use a regular email provider"


def test_check_email_disposable_domain_is_case_insensitive():
    assert check_email("someone@MailInator.com") is not None


@pytest.mark.parametrize(
    "email, expected",
    [
        ("viewer@gmail.com", None),
        ("first.last+tag@proton.me", None),
        ("missing-at.gmail.com", "Invalid email format"),
        ("no spaces@gmail.com", "Invalid email format"),
        ("user@localhost", "Invalid email format"),
        (f"{'a' * 95}@gmail.com", "Email address is too long"),
    ],
)
def test_check_email(email, expected):
    assert check_email(email) == expected


# Tests CSRF tokens
def test_generate_csrf_token_is_random_hex():
    tokens = {generate_csrf_token() for _ in range(20)}
    assert len(tokens) == 20
    assert all(re.fullmatch(r"[0-9a-f]{64}", token) for token in tokens)


@pytest.mark.parametrize(
    "submitted, expected, result",
    [
        ("abc", "abc", True),
        ("abc", "abd", False),
        ("", "", False),
        ("abc", None, False),
        (None, "abc", False),
        (["abc"], "abc", False),
        (123, "123", False),
        ({"token": "abc"}, "abc", False),
    ],
)
def test_tokens_match(submitted, expected, result):
    assert tokens_match(submitted, expected) is result


# Tests keys
def test_submission_key_is_stable_and_case_insensitive():
    key = submission_key("203.0.113.7", "Viewer@Gmail.com", VIDEO_ID)
    assert key == submission_key("203.0.113.7", "viewer@gmail.com", VIDEO_ID)
    assert key.startswith("submission:")
    assert "gmail" not in key


def test_submission_key_differs_per_video():
    first = submission_key("203.0.113.7", "viewer@gmail.com", VIDEO_ID)
    second = submission_key("203.0.113.7", "viewer@gmail.com", "9bZkp7q19f0")
    assert first != second


def test_rate_limit_key():
    assert rate_limit_key("203.0.113.7", "viewer@gmail.com") == "203.0.113.7-viewer@gmail.com"
    assert rate_limit_key("203.0.113.7", "") == "203.0.113.7-anonymous"
    assert rate_limit_key("203.0.113.7", None) == "203.0.113.7-anonymous"
    assert rate_limit_key("203.0.113.7", ["viewer@gmail.com"]) == "203.0.113.7-anonymous"


def test_submission_key_digest():
    expected = xxhash.xxh64(f"203.0.113.7-viewer@gmail.com-{VIDEO_ID}".encode()).hexdigest()

    key = submission_key("203.0.113.7", "viewer@gmail.com", VIDEO_ID)

    assert key == f"submission:{expected}"


def test_submission_key_non_ascii_email():
    key = submission_key("203.0.113.7", "zoë@exämple.com", VIDEO_ID)
    assert re.fullmatch(r"submission:[0-9a-f]{16}", key)


# Tests get_client_ip
def test_get_client_ip_uses_socket_peer():
    request = SimpleNamespace(
        client=SimpleNamespace(host="203.0.113.50"),
        headers={"X-Forwarded-For": "198.51.100.66"},
    )
    assert get_client_ip(request) == "203.0.113.50"


def test_get_client_ip_without_peer():
    assert get_client_ip(SimpleNamespace(client=None, headers={})) == "unknown"
