from __future__ import annotations

from flowlane.automations.templates import build_form_link, format_value, render_template


def _context() -> dict:
    return {
        "card": {
            "title": "Acme onboarding",
            "description": "Enterprise plan",
            "fields": {
                "company": "Acme",
                "signed": True,
                "paid": False,
                "seats": 25.0,
                "contract": {"url": "https://files.test/contract.pdf", "name": "contract.pdf"},
            },
        },
        "form": {"id": "form-1", "name": "Client Intake", "link": "https://app.test/form/c1/form-1"},
        "stage": {"name": "Review"},
        "pipe": {"name": "Sales"},
    }


def test_render_replaces_every_supported_token() -> None:
    text = (
        "{{card.title}} | {{card.description}} | {{card.field.company}} | "
        "{{form.name}} ({{form.id}}) {{form.link}} | {{stage.name}} @ {{pipe.name}}"
    )

    rendered = render_template(text, _context())

    assert rendered == (
        "Acme onboarding | Enterprise plan | Acme | "
        "Client Intake (form-1) https://app.test/form/c1/form-1 | Review @ Sales"
    )


def test_card_field_values_are_formatted_for_humans() -> None:
    rendered = render_template(
        "{{card.field.signed}}/{{card.field.paid}}/{{card.field.seats}}/{{card.field.contract}}",
        _context(),
    )

    assert rendered == "Yes/No/25/https://files.test/contract.pdf"


def test_missing_field_renders_empty_string() -> None:
    assert render_template("[{{card.field.unknown}}]", _context()) == "[]"


def test_tokens_of_an_absent_bucket_are_left_untouched() -> None:
    context = _context()
    context["form"] = None
    del context["pipe"]

    rendered = render_template("Open {{form.link}} in {{pipe.name}} for {{card.title}}", context)

    assert rendered == "Open {{form.link}} in {{pipe.name}} for Acme onboarding"


def test_present_bucket_with_absent_value_renders_empty() -> None:
    context = _context()
    context["card"]["description"] = None

    assert render_template("<{{card.description}}>", context) == "<>"


def test_unknown_tokens_are_not_touched() -> None:
    assert render_template("{{card.owner}} {{user.name}}", _context()) == "{{card.owner}} {{user.name}}"


def test_format_value_and_form_link() -> None:
    assert format_value(None) == ""
    assert format_value(3.5) == "3.5"
    assert format_value(["a", "b"]) == "a, b"
    assert build_form_link("https://app.test/", "card-1", "form-1") == "https://app.test/form/card-1/form-1"
