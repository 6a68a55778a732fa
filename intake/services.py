import asyncio
import logging
import math
import os
import time
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import ValidationError

from intake.helpers import (
    CanonicalVideo,
    URLCheckFailed,
    check_email,
    parse_youtube_url,
    rate_limit_key,
    submission_key,
    tokens_match,
)
from intake.models import (
    SecurityEvent,
    Severity,
    SubmissionForm,
    SubmissionRequest,
    SubmissionResult,
)
from intake.preview import PreviewService
from intake.repository import RateLimiter, SubmissionStore

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("intake.security")


def _address_set(value: str) -> FrozenSet[str]:
    return frozenset(ip.strip() for ip in value.split(",") if ip.strip())


RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", 900))
RATE_LIMIT_MAX_SUBMISSIONS = int(os.getenv("RATE_LIMIT_MAX_SUBMISSIONS", 3))
DUPLICATE_WINDOW_SECONDS = int(os.getenv("DUPLICATE_WINDOW_SECONDS", 1800))
PREVIEW_TIMEOUT_SECONDS = float(os.getenv("PREVIEW_TIMEOUT_SECONDS", 60))
IP_ALLOWLIST = _address_set(os.getenv("IP_ALLOWLIST", "127.0.0.1"))
IP_DENYLIST = _address_set(os.getenv("IP_DENYLIST", ""))

SUCCESS_MESSAGE = "Preview processed, please check your inbox"
HONEYPOT_MESSAGE = "Submission received, please check your inbox"

SEVERITY_LEVELS = {
    "info": logging.INFO,
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.WARNING,
}


# Rejections
class SubmissionRejected(Exception):
    kind = "Rejected"
    error = "Submission rejected"

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class IpBlocked(SubmissionRejected):
    kind = "IpBlocked"
    error = "Access denied"

    def __init__(self, client_ip: str):
        self.client_ip = client_ip
        super().__init__("Access denied")


class RateLimitExceeded(SubmissionRejected):
    kind = "RateLimited"
    error = "Too many requests"

    def __init__(self, identity: str, request_count: int, retry_after: int):
        self.identity = identity
        self.request_count = request_count
        self.retry_after = retry_after
        super().__init__(
            f"Too many submissions, please try again in {retry_after} minutes"
        )


class ValidationFailed(SubmissionRejected):
    kind = "ValidationFailed"
    error = "Validation failed"

    def __init__(self, field_errors: Dict[str, str]):
        self.field_errors = field_errors
        super().__init__("Input validation failed")


class CsrfInvalid(SubmissionRejected):
    kind = "CsrfInvalid"
    error = "CSRF validation failed"

    def __init__(self):
        super().__init__("Security check failed, please refresh the page and try again")


class InvalidURL(SubmissionRejected):
    kind = "InvalidUrl"
    error = "Invalid YouTube URL"

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"YouTube link validation failed: {reason}")


class InvalidEmail(SubmissionRejected):
    kind = "InvalidEmail"
    error = "Invalid email"

    def __init__(self, email: str, reason: str):
        self.email = email
        self.reason = reason
        super().__init__(reason)


class DuplicateSubmission(SubmissionRejected):
    kind = "DuplicateSubmission"
    error = "Duplicate submission"

    def __init__(self, video_id: str):
        self.video_id = video_id
        super().__init__("Please do not submit the same video more than once")


class PreviewProcessingFailed(SubmissionRejected):
    kind = "PreviewProcessingFailed"
    error = "Internal server error"

    def __init__(self, video_id: str, details: str):
        self.video_id = video_id
        self.details = details
        super().__init__("Internal server error, please try again later")


class RecordNotFound(Exception):
    def __init__(self, record_type: str, identifier: str):
        self.record_type = record_type
        self.identifier = identifier
        self.message = f"{record_type} not found for identifier: {identifier}"
        super().__init__(self.message)


# Security events
class SecurityEventLog:
    """Append-only record of security events, mirrored to the security logger."""

    def __init__(self, maxlen: int = 1000):
        self._events: deque = deque(maxlen=maxlen)
        self._lock = Lock()

    def record(
        self,
        type: str,
        ip: str,
        user_agent: str = "",
        details: Any = None,
        severity: Severity = "info",
    ) -> SecurityEvent:
        event = SecurityEvent(
            timestamp=datetime.now(timezone.utc),
            type=type,
            ip=ip,
            user_agent=user_agent,
            details=details,
            severity=severity,
        )
        with self._lock:
            self._events.append(event)

        entry = event.model_dump_json(by_alias=True)
        security_logger.log(SEVERITY_LEVELS[severity], f"[SECURITY] {entry}")
        if severity == "high":
            security_logger.error(f"[SECURITY ALERT] {entry}")
        return event

    @property
    def events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)


# Validation
def _error_message(error: Dict[str, Any]) -> str:
    ctx = error.get("ctx") or {}
    if error["type"] == "value_error" and "error" in ctx:
        return str(ctx["error"])
    return error["msg"]


def validateSubmission(submission: SubmissionRequest) -> SubmissionForm:
    try:
        return SubmissionForm.model_validate(
            {
                "url": submission.url,
                "email": submission.email,
                "_honeypot": submission.honeypot,
                "csrfToken": submission.csrf_token,
            }
        )
    except ValidationError as exc:
        field_errors: Dict[str, str] = {}
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"]) or "form"
            field_errors.setdefault(field, _error_message(error))
        raise ValidationFailed(field_errors)


class Gatekeeper:
    """Ordered abuse-prevention checks applied to one form submission.

    Each check either returns and lets the next one run, or raises a
    SubmissionRejected subclass. A tripped honeypot is the one rejection
    that is returned as a normal result, so automated clients cannot tell
    they were caught.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        submission_store: SubmissionStore,
        preview_service: PreviewService,
        events: Optional[SecurityEventLog] = None,
        ip_allowlist: FrozenSet[str] = IP_ALLOWLIST,
        ip_denylist: FrozenSet[str] = IP_DENYLIST,
        rate_limit_max: int = RATE_LIMIT_MAX_SUBMISSIONS,
        rate_limit_window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        preview_timeout: float = PREVIEW_TIMEOUT_SECONDS,
    ):
        self.rate_limiter = rate_limiter
        self.submission_store = submission_store
        self.preview_service = preview_service
        self.events = events or SecurityEventLog()
        self.ip_allowlist = ip_allowlist
        self.ip_denylist = ip_denylist
        self.rate_limit_max = rate_limit_max
        self.retry_after = math.ceil(rate_limit_window_seconds / 60)
        self.preview_timeout = preview_timeout

    async def process(
        self,
        submission: SubmissionRequest,
        session_token: Optional[str],
        timeout: Optional[float] = None,
    ) -> SubmissionResult:
        started = time.monotonic()

        self.checkIpReputation(submission)
        await self.checkRateLimit(submission)

        try:
            form = validateSubmission(submission)
        except ValidationFailed as exc:
            if "_honeypot" in exc.field_errors:
                return self.trapBot(submission)
            logger.info(
                f"Validation failed for {submission.client_ip}: {exc.field_errors}"
            )
            raise

        self.checkCsrfToken(submission, session_token)
        video = self.checkUrl(submission, form.url)
        email = self.checkEmail(submission, form.email)
        await self.checkDuplicate(submission, email, video)

        return await self.handOff(submission, email, video, timeout, started)

    def checkIpReputation(self, submission: SubmissionRequest):
        ip = submission.client_ip
        if ip in self.ip_allowlist:
            return
        if ip in self.ip_denylist:
            self.events.record(
                "ip_blocked",
                ip,
                submission.user_agent,
                details="IP address is on the deny list",
                severity="medium",
            )
            raise IpBlocked(ip)

    async def checkRateLimit(self, submission: SubmissionRequest):
        identity = rate_limit_key(submission.client_ip, submission.email)
        rate_limit = await self.rate_limiter.hit(identity)
        if rate_limit is None:
            logger.error(f"Cannot find rate limit info for identity: {identity}")
            raise RecordNotFound("Rate limit info", identity)
        if rate_limit.request_count > self.rate_limit_max:
            self.events.record(
                "rate_limited",
                submission.client_ip,
                submission.user_agent,
                details={"requestCount": rate_limit.request_count},
                severity="medium",
            )
            raise RateLimitExceeded(identity, rate_limit.request_count, self.retry_after)

    def trapBot(self, submission: SubmissionRequest) -> SubmissionResult:
        self.events.record(
            "honeypot_triggered",
            submission.client_ip,
            submission.user_agent,
            details="Bot detected via honeypot",
            severity="high",
        )
        return SubmissionResult(message=HONEYPOT_MESSAGE)

    def checkCsrfToken(self, submission: SubmissionRequest, session_token: Optional[str]):
        expected = session_token or submission.header_token
        if not tokens_match(submission.csrf_token, expected):
            self.events.record(
                "csrf_validation_failed",
                submission.client_ip,
                submission.user_agent,
                details="Invalid CSRF token",
                severity="high",
            )
            raise CsrfInvalid()

    def checkUrl(self, submission: SubmissionRequest, url: str) -> CanonicalVideo:
        try:
            return parse_youtube_url(url)
        except URLCheckFailed as exc:
            self.events.record(
                "invalid_youtube_url",
                submission.client_ip,
                submission.user_agent,
                details={"url": url, "error": str(exc)},
                severity="medium",
            )
            raise InvalidURL(url, str(exc))

    def checkEmail(self, submission: SubmissionRequest, email: str) -> str:
        reason = check_email(email)
        if reason:
            self.events.record(
                "invalid_email",
                submission.client_ip,
                submission.user_agent,
                details={"email": email, "error": reason},
                severity="medium",
            )
            raise InvalidEmail(email, reason)
        return email

    async def checkDuplicate(
        self, submission: SubmissionRequest, email: str, video: CanonicalVideo
    ):
        key = submission_key(submission.client_ip, email, video.video_id)
        if not await self.submission_store.claim(key):
            self.events.record(
                "duplicate_submission",
                submission.client_ip,
                submission.user_agent,
                details={"email": email, "videoId": video.video_id},
                severity="medium",
            )
            raise DuplicateSubmission(video.video_id)

    async def handOff(
        self,
        submission: SubmissionRequest,
        email: str,
        video: CanonicalVideo,
        timeout: Optional[float],
        started: float,
    ) -> SubmissionResult:
        try:
            result = await asyncio.wait_for(
                self.preview_service.process_preview(video.canonical_url, email),
                timeout=timeout or self.preview_timeout,
            )
        except Exception as exc:
            details = str(exc) or type(exc).__name__
            self.events.record(
                "preview_failed",
                submission.client_ip,
                submission.user_agent,
                details={"email": email, "videoId": video.video_id, "error": details},
                severity="high",
            )
            raise PreviewProcessingFailed(video.video_id, details) from exc

        self.events.record(
            "preview_completed",
            submission.client_ip,
            submission.user_agent,
            details={
                "email": email,
                "videoId": video.video_id,
                "previewId": result.preview_id,
                "cost": result.pricing.suggested_price_usd,
            },
        )
        self.events.record(
            "submission_success",
            submission.client_ip,
            submission.user_agent,
            details={
                "email": email,
                "videoId": video.video_id,
                "processingTime": round((time.monotonic() - started) * 1000),
            },
        )
        logger.info(f"Submission accepted: {video.canonical_url} -> {result.preview_id}")

        return SubmissionResult(
            message=SUCCESS_MESSAGE,
            preview_id=result.preview_id,
            estimated_cost=result.pricing.suggested_price_usd,
        )
