from mailgenius.templating import DEFAULT_LEAD_NAME, lead_variables, render


def test_render_replaces_known_placeholders():
    assert render("Hi {{name}}, welcome to {{ company }}", {"name": "Ada", "company": "Acme"}) == (
        "Hi Ada, welcome to Acme"
    )


def test_render_keeps_unknown_placeholders():
    assert render("Hi {{nmae}}", {"name": "Ada"}) == "Hi {{nmae}}"


def test_render_none_value_becomes_empty():
    assert render("[{{phone}}]", {"phone": None}) == "[]"


def test_render_empty_template():
    assert render(None, {"name": "Ada"}) == ""


def test_lead_variables_defaults_and_custom_fields():
    variables = lead_variables(
        {"email": "ada@example.com", "custom_fields": {"plan": "pro", "email": "override@example.com"}}
    )
    assert variables["name"] == DEFAULT_LEAD_NAME
    assert variables["email"] == "ada@example.com"
    assert variables["company"] == ""
    assert variables["plan"] == "pro"
