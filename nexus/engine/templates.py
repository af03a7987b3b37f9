"""Message template rendering using Jinja2.

Step subjects and bodies are Jinja2 source strings with the contact in
scope, e.g. ``"Hi {{ contact.first_name }}, thanks for reaching out"``.
Custom fields are available both under ``contact.custom_fields`` and
flattened onto ``contact`` itself.

Usage:
    from nexus.engine.templates import render_message

    body = render_message(step.body, contact)
"""

from functools import lru_cache
from typing import Any

import jinja2

from nexus.core.exceptions import ValidationError
from nexus.core.logging import get_logger
from nexus.db.models import Contact

logger = get_logger(__name__)

# Plain-text bodies; the relay decides on HTML wrapping
_env = jinja2.Environment(autoescape=False, undefined=jinja2.Undefined)


@lru_cache(maxsize=256)
def _compile(source: str) -> jinja2.Template:
    return _env.from_string(source)


def contact_context(contact: Contact) -> dict[str, Any]:
    """Flatten a contact into template/condition variables.

    Custom fields win over profile attributes with the same name.
    """
    values: dict[str, Any] = {
        "id": contact.id,
        "name": contact.name,
        "first_name": contact.first_name,
        "email": contact.email,
        "phone": contact.phone,
        "status": contact.status,
        "source": contact.source,
        "tags": list(contact.tags),
        "lead_score": contact.lead_score,
    }
    values.update(contact.custom_fields)
    values["custom_fields"] = dict(contact.custom_fields)
    return values


def render_message(source: str, contact: Contact, **extra: Any) -> str:
    """Render a template string for a contact.

    Raises:
        ValidationError: If the template does not parse or fails to render
    """
    if not source:
        return ""
    try:
        return _compile(source).render(contact=contact_context(contact), **extra).strip()
    except jinja2.TemplateError as e:
        logger.warning(
            "Template render failed",
            extra={"context": {"contact_id": contact.id, "error": str(e)}},
        )
        raise ValidationError(f"Template error: {e}") from e
