from __future__ import annotations

import logging
import secrets

from fastapi import HTTPException, Request, status

logger = logging.getLogger("security")


def verify_service_token(request: Request) -> None:
    """Guard for the engine control routes (reload, cancel, status)."""
    state = request.app.state
    expected = state.settings.service_token
    if not expected:
        # no token configured: local development, let everything through
        if not getattr(state, "service_token_warning", False):
            logger.warning("SOUNDMAP_SERVICE_TOKEN is not set, engine control routes are unprotected")
            state.service_token_warning = True
        return

    provided = request.headers.get("X-Service-Token", "")
    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid service token")
