"""Placeholder substitution for email subjects and bodies.

Supported tokens::

    {{card.title}} {{card.description}} {{card.field.KEY}}
    {{form.link}} {{form.name}} {{form.id}}
    {{stage.name}} {{pipe.name}}

Each token belongs to a bucket (``card``, ``form``, ``stage``, ``pipe``). A bucket that is
missing from the render context leaves its tokens untouched; a bucket that is present
renders absent values as an empty string.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any


_TOKEN_RE = re.compile(r"\{\{(card|form|stage|pipe)\.(title|description|link|name|id|field\.([^}]+))\}\}")

_BUCKET_KEYS = {
    "card": {"title", "description"},
    "form": {"link", "name", "id"},
    "stage": {"name"},
    "pipe": {"name"},
}


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, Mapping):
        url = value.get("url")
        return str(url) if url else ""
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(item) for item in value)
    return str(value)


def render_template(text: str, context: Mapping[str, Mapping[str, Any] | None]) -> str:
    def replace(match: re.Match[str]) -> str:
        bucket_name, key, field_key = match.group(1), match.group(2), match.group(3)
        bucket = context.get(bucket_name)
        if bucket is None:
            return match.group(0)

        if field_key is not None:
            if bucket_name != "card":
                return match.group(0)
            fields = bucket.get("fields") or {}
            return format_value(fields.get(field_key))

        if key not in _BUCKET_KEYS[bucket_name]:
            return match.group(0)
        return format_value(bucket.get(key))

    return _TOKEN_RE.sub(replace, text)


def build_form_link(base_url: str, card_id: Any, form_id: Any) -> str:
    return f"{base_url.rstrip('/')}/form/{card_id}/{form_id}"
