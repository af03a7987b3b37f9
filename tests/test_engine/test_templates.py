"""Tests for message template rendering."""

import pytest

from nexus.core.exceptions import ValidationError
from nexus.db.models import Contact
from nexus.engine.templates import contact_context, render_message


@pytest.fixture
def contact() -> Contact:
    return Contact(
        id="c-1",
        sub_account_id="acct-1",
        name="Ada Lovelace",
        email="ada@example.com",
        lead_score=72,
        custom_fields={"website": "ada.dev", "status": "Customer"},
    )


class TestContactContext:
    """Flattened variables for templates and branch conditions."""

    def test_profile_fields(self, contact):
        values = contact_context(contact)
        assert values["first_name"] == "Ada"
        assert values["lead_score"] == 72

    def test_custom_fields_flattened(self, contact):
        values = contact_context(contact)
        assert values["website"] == "ada.dev"
        assert values["custom_fields"]["website"] == "ada.dev"

    def test_custom_field_wins_over_profile(self, contact):
        values = contact_context(contact)
        assert values["status"] == "Customer"
        assert values["name"] == "Ada Lovelace"


class TestRenderMessage:
    """Jinja2 rendering."""

    def test_renders_contact_fields(self, contact):
        body = render_message("Hi {{ contact.first_name }}, saw {{ contact.website }}", contact)
        assert body == "Hi Ada, saw ada.dev"

    def test_missing_variable_renders_empty(self, contact):
        assert render_message("Hi {{ contact.nickname }}!", contact) == "Hi !"

    def test_result_stripped(self, contact):
        assert render_message("  {{ contact.missing }}  ", contact) == ""

    def test_empty_source(self, contact):
        assert render_message("", contact) == ""

    def test_extra_variables(self, contact):
        assert render_message("{{ offer }}", contact, offer="20% off") == "20% off"

    def test_syntax_error_raises_validation_error(self, contact):
        with pytest.raises(ValidationError, match="Template error"):
            render_message("Hi {{ contact.first_name ", contact)
