from __future__ import annotations

from core.errors import Unauthenticated
from core.jobs import UserSession


def session_from_email(email: str | None) -> UserSession:
    clean = (email or "").strip().lower()
    if not clean or "@" not in clean:
        raise Unauthenticated("missing or malformed identity", user_message="Not authenticated")
    domain = clean.split("@")[-1]
    if domain in {"pro.clipforge", "studio.clipforge"}:
        plan = "pro"
    elif domain in {"creator.clipforge", "creator.com"}:
        plan = "creator"
    else:
        plan = "free"
    return UserSession(email=clean, plan=plan)
