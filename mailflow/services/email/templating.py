"""
Variable substitution for subjects and bodies.

Tokens look like ``{{key}}`` or ``{{key ?? fallback}}``. A key that is missing
(or None) renders the fallback, or nothing when there is none.
"""

import re
from collections.abc import Mapping
from typing import Any, NamedTuple

TOKEN_PATTERN = re.compile(r"\{\{(.*?)}}")


class RenderedTemplate(NamedTuple):
    subject: str
    body: str


def _split_token(token: str) -> tuple[str, str | None]:
    key, sep, default = token.partition("??")
    return key.strip(), default.strip() if sep else None


def _lookup(variables: Mapping[str, Any], token: str) -> tuple[Any, str | None]:
    key, default = _split_token(token)
    return variables.get(key), default


def _render_scalar(value: Any, default: str | None) -> str:
    if value is None:
        return default if default is not None else ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_subject(subject: str, variables: Mapping[str, Any]) -> str:
    def replace(match: re.Match) -> str:
        value, default = _lookup(variables, match.group(1))
        if isinstance(value, (list, tuple)):
            return ", ".join(str(item) for item in value)
        return _render_scalar(value, default)

    return TOKEN_PATTERN.sub(replace, subject)


def render_body(body: str, variables: Mapping[str, Any]) -> str:
    def replace(match: re.Match) -> str:
        value, default = _lookup(variables, match.group(1))
        if isinstance(value, (list, tuple)):
            return "\n".join(f"<li>{item}</li>" for item in value)
        return _render_scalar(value, default)

    return TOKEN_PATTERN.sub(replace, body)


def render_template(subject: str, body: str, variables: Mapping[str, Any]) -> RenderedTemplate:
    return RenderedTemplate(
        subject=render_subject(subject, variables), body=render_body(body, variables)
    )


def contact_variables(contact_id: Any, email: str, metadata: Mapping[str, Any] | None) -> dict:
    """Reserved variables first; contact metadata may override them."""
    variables: dict[str, Any] = {"contact_id": str(contact_id), "contact_email": email}
    if metadata:
        variables.update(metadata)
    return variables
