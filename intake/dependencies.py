from typing import AsyncGenerator

from fastapi import Request

from intake.repository import SessionStore
from intake.services import Gatekeeper


async def get_gatekeeper(request: Request) -> AsyncGenerator[Gatekeeper, None]:
    yield request.app.state.gatekeeper


async def get_session_store(request: Request) -> AsyncGenerator[SessionStore, None]:
    yield request.app.state.session_store
