"""Resolve ``resume_session`` values to the step id they name.

Two spellings are accepted::

    resume_session: analyse
    resume_session: ${{ steps.analyse.outputs.session_id }}

Anything else resolves to ``None``.
"""

import re
from typing import Any

_BARE_ID = re.compile(r"[A-Za-z0-9_]+")
_TEMPLATE = re.compile(r"\$\{\{\s*steps\s*\.\s*([A-Za-z0-9_]+)\s*\.\s*outputs\s*\.\s*session_id\s*\}\}")


def get_session_reference(raw: Any) -> str | None:
    """Return the step id referenced by ``raw``, or ``None``.

    Never raises; non-string input resolves to ``None``.

    Example:
        >>> get_session_reference("${{steps.init.outputs.session_id}}")
        'init'
        >>> get_session_reference("special@chars#invalid") is None
        True
    """
    if not isinstance(raw, str):
        return None
    if _BARE_ID.fullmatch(raw):
        return raw
    match = _TEMPLATE.fullmatch(raw)
    if match:
        return match.group(1)
    return None
