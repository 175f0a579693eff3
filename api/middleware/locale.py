from __future__ import annotations

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from core.i18n import set_locale


def _best_language(accept_language: str) -> str:
    """'hi-IN,hi;q=0.9,en;q=0.8' -> 'hi-IN'"""
    best, best_q = "en", -1.0
    for part in accept_language.split(","):
        lang, _, weight = part.strip().partition(";")
        if not lang:
            continue
        q = 1.0
        if weight.strip().startswith("q="):
            try:
                q = float(weight.strip()[2:])
            except ValueError:
                q = 0.0
        if q > best_q:
            best, best_q = lang.strip(), q
    return best


class LocaleMiddleware(BaseHTTPMiddleware):
    """Priority: ?lang=xx > X-Lang > Accept-Language > 'en'."""

    async def dispatch(self, request: Request, call_next):
        lang = request.query_params.get("lang") or request.headers.get("X-Lang")
        if not lang:
            accept = request.headers.get("Accept-Language", "")
            lang = _best_language(accept) if accept else "en"
        set_locale(lang.replace("-", "_"))
        request.state.locale = lang
        return await call_next(request)
