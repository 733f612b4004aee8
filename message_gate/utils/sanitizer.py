"""
message_gate/utils/sanitizer.py — Markup stripping before transmission
"""
from __future__ import annotations

import nh3

# Elements removed together with everything inside them.
DROP_CONTENT_TAGS = {"script", "style"}


def sanitize(text: str) -> str:
    """
    Strip every tag and attribute, keeping text content. Script/style bodies
    are dropped entirely; comments are removed. Output is HTML-serialized text
    (``&``, ``<``, ``>`` escaped), which makes the function idempotent.
    """
    if not text:
        return ""
    return nh3.clean(
        text,
        tags=set(),
        clean_content_tags=DROP_CONTENT_TAGS,
        attributes={},
        strip_comments=True,
    )
