"""User-facing strings, looked up from JSON files in ``locale/``."""
from __future__ import annotations

import json
import locale
import os
from pathlib import Path
from typing import Any

LOCALE_DIR = Path(__file__).parent / 'locale'
LANG_ENV = 'USAGE_MONITOR_LANG'


def detect_lang_code(lang: str) -> str:
    """Detect locale file code from system locale string using convention-based lookup.

    Lookup chain: ``{lang}-{REGION}.json`` → ``{lang}.json`` → ``en.json``.

    Parameters
    ----------
    lang : str
        System locale string, e.g. ``'de_DE.UTF-8'`` or ``'C'``.

    Returns
    -------
    str
        Locale file code (without ``.json``).
    """
    if not lang:
        return 'en'

    normalized = locale.normalize(lang).split('.')[0]
    parts = normalized.split('_', 1)
    base = parts[0].lower()
    region = parts[1] if len(parts) > 1 else ''

    if region and (LOCALE_DIR / f'{base}-{region}.json').exists():
        return f'{base}-{region}'
    if (LOCALE_DIR / f'{base}.json').exists():
        return base

    return 'en'


def system_lang() -> str:
    """Return the language setting from the environment, e.g. ``'de_DE.UTF-8'``."""
    for var in (LANG_ENV, 'LC_ALL', 'LC_MESSAGES', 'LANG'):
        value = os.environ.get(var)
        if value:
            return value
    return locale.getlocale()[0] or ''


def load_translations(lang: str | None = None) -> dict[str, Any]:
    """Load translations for *lang* (default: the system language), falling back to English."""
    lang_code = detect_lang_code(system_lang() if lang is None else lang)
    strings = json.loads((LOCALE_DIR / 'en.json').read_text(encoding='utf-8'))
    if lang_code != 'en':
        strings.update(json.loads((LOCALE_DIR / f'{lang_code}.json').read_text(encoding='utf-8')))

    return strings


T: dict[str, Any] = load_translations()
