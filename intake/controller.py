import logging
import os
import secrets
import time
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from intake.dependencies import get_gatekeeper, get_session_store
from intake.helpers import SECURITY_HEADERS, generate_csrf_token, get_client_ip
from intake.models import (
    CsrfToken,
    SubmissionPayload,
    SubmissionRequest,
    SubmissionResult,
)
from intake.repository import SessionStore
from intake.services import (
    CsrfInvalid,
    DuplicateSubmission,
    Gatekeeper,
    InvalidEmail,
    InvalidURL,
    IpBlocked,
    PreviewProcessingFailed,
    RateLimitExceeded,
    ValidationFailed,
)

logger = logging.getLogger(__name__)
router = APIRouter()

SESSION_COOKIE_NAME = "intake_session"
CSRF_TOKEN_TTL_SECONDS = int(os.getenv("CSRF_TOKEN_TTL_SECONDS", 1800))
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "true").lower() == "true"
MAX_BODY_BYTES = int(os.getenv("MAX_BODY_BYTES", 1024 * 1024))

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


# Middleware
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    return response


# Helpers
def _parse_payload(body: bytes) -> SubmissionPayload:
    try:
        return SubmissionPayload.model_validate_json(body)
    except ValidationError:
        return SubmissionPayload()


def _error(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"error": error, "message": message, **extra}
    )


async def _session_token(request: Request, session_store: SessionStore) -> Optional[str]:
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    if not session_id:
        return None
    return await session_store.get_token(session_id)


# Routes
@router.get("/health")
def health_check():
    health_status = {"status": "healthy"}
    logger.info("Health Check: OK")
    return JSONResponse(content=health_status, status_code=status.HTTP_200_OK)


@router.get("/api/csrf-token", response_model=CsrfToken)
async def csrf_token(
    request: Request,
    session_store: Annotated[SessionStore, Depends(get_session_store)],
):
    session_id = request.cookies.get(SESSION_COOKIE_NAME) or secrets.token_urlsafe(32)
    token = generate_csrf_token()

    try:
        await session_store.save_token(session_id, token)
    except Exception as exc:
        logger.error(f"CSRF token generation error: {str(exc)}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to generate token"},
            headers=NO_CACHE_HEADERS,
        )

    expires = int((time.time() + CSRF_TOKEN_TTL_SECONDS) * 1000)
    response = JSONResponse(
        content=CsrfToken(token=token, expires=expires).model_dump(),
        headers=NO_CACHE_HEADERS,
    )
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session_id,
        max_age=CSRF_TOKEN_TTL_SECONDS,
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite="strict",
    )
    return response


@router.post("/api/submit", response_model=SubmissionResult)
async def submit(
    request: Request,
    gatekeeper: Annotated[Gatekeeper, Depends(get_gatekeeper)],
    session_store: Annotated[SessionStore, Depends(get_session_store)],
):
    client_ip = get_client_ip(request)
    user_agent = request.headers.get("User-Agent", "")

    body = await request.body()
    if len(body) > MAX_BODY_BYTES:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            "Payload too large",
            f"Request body exceeds {MAX_BODY_BYTES} bytes",
        )

    payload = _parse_payload(body)
    submission = SubmissionRequest(
        url=payload.url,
        email=payload.email,
        honeypot=payload.honeypot,
        csrf_token=payload.csrf_token,
        header_token=request.headers.get("X-CSRF-Token"),
        client_ip=client_ip,
        user_agent=user_agent,
    )

    try:
        session_token = await _session_token(request, session_store)
        result = await gatekeeper.process(submission, session_token)
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=result.model_dump(by_alias=True, exclude_none=True),
        )

    except ValidationFailed as exc:
        details = [
            {"field": field, "message": message}
            for field, message in exc.field_errors.items()
        ]
        return _error(
            status.HTTP_400_BAD_REQUEST, exc.error, exc.message, details=details
        )

    except RateLimitExceeded as exc:
        return _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            exc.error,
            exc.message,
            retryAfter=exc.retry_after,
        )

    except (IpBlocked, CsrfInvalid) as exc:
        return _error(status.HTTP_403_FORBIDDEN, exc.error, exc.message)

    except (InvalidURL, InvalidEmail) as exc:
        return _error(status.HTTP_400_BAD_REQUEST, exc.error, exc.message)

    except DuplicateSubmission as exc:
        return _error(status.HTTP_429_TOO_MANY_REQUESTS, exc.error, exc.message)

    except PreviewProcessingFailed as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.error, exc.message)

    except Exception as exc:
        logger.error(f"Error processing submission: {str(exc)}")
        gatekeeper.events.record(
            "submission_error",
            client_ip,
            user_agent,
            details={"error": str(exc)},
            severity="high",
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error",
            "Internal server error, please try again later",
        )
