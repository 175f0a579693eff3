from __future__ import annotations

import gettext
from contextvars import ContextVar
from pathlib import Path
from typing import Optional

_current_locale: ContextVar[str] = ContextVar("current_locale", default="en")
_translators: dict[str, gettext.NullTranslations] = {}
LOCALE_DIR = Path(__file__).resolve().parent.parent / "locales"


def set_locale(locale: str) -> None:
    _current_locale.set(locale or "en")


def get_locale() -> str:
    return _current_locale.get()


def _get_translator(locale: str) -> gettext.NullTranslations:
    tr = _translators.get(locale)
    if tr is None:
        # fallback=True yields NullTranslations when no catalog is shipped
        tr = gettext.translation("messages", localedir=str(LOCALE_DIR), languages=[locale], fallback=True)
        _translators[locale] = tr
    return tr


def t(msgid: str, default: Optional[str] = None, **params) -> str:
    """Translate ``msgid`` for the current locale.

    Untranslated keys fall back to ``default`` (the English message) or the key.
    """
    text = _get_translator(get_locale()).gettext(msgid)
    if text == msgid and default is not None:
        text = default
    if not params:
        return text
    try:
        return text.format(**params)
    except (KeyError, IndexError, ValueError):
        return text
