"""Template rendering for notification subjects and bodies."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Mapping, Optional, Tuple

from ..db import NotificationDB

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names render as ``""``."""

    def _sub(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)


def template_variables(payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    variables: Dict[str, Any] = {}
    for key, value in (payload or {}).items():
        if value is None:
            continue
        variables[key] = json.dumps(value) if isinstance(value, (dict, list)) else value
    return variables


async def render_notification_content(
    db: NotificationDB,
    event_type: str,
    notification_type: str,
    channel: str,
    payload: Optional[Mapping[str, Any]],
    locale: str = "en",
) -> Tuple[str, str]:
    """Return ``(subject, body)`` for a notification.

    Without a stored template the subject is the notification type in words
    and the body is the JSON payload.
    """
    template = await db.get_template(event_type, notification_type, channel, locale)
    variables = template_variables(payload)
    if template is not None:
        subject = (
            render_template(template.subject, variables)
            if template.subject
            else notification_type
        )
        return subject, render_template(template.body_template, variables)

    body = json.dumps(dict(payload), default=str) if payload else notification_type
    return notification_type.replace("_", " "), body
