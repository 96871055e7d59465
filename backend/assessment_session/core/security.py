from __future__ import annotations

from fastapi import HTTPException, Request

_SCHEMES = {"bearer", "token"}


def get_candidate_token(request: Request) -> str:
    """Credential forwarded to the recruitment API on the candidate's behalf.

    Accepts ``Authorization: Bearer <t>`` or ``Authorization: Token <t>``, falling
    back to the ``candidate_token`` cookie.
    """

    token = ""
    header = str(request.headers.get("authorization") or "").strip()
    if header:
        scheme, _, value = header.partition(" ")
        if scheme.lower() not in _SCHEMES or not value.strip():
            raise HTTPException(status_code=401, detail="invalid authorization header")
        token = value.strip()
    if not token:
        token = str(request.cookies.get("candidate_token") or "").strip()
    if not token:
        raise HTTPException(status_code=401, detail="not authenticated")
    return token
