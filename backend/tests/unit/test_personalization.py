# backend/tests/unit/test_personalization.py

from engage.campaigns.personalization import contact_values, customer_values, personalize, personalize_value


def test_known_placeholders_are_replaced_and_unknown_kept():
    values = customer_values({"first_name": "Asha", "last_name": "Rao"})
    assert personalize("Hi {{ first_name }}, {{name}}! {{coupon}}", values) == "Hi Asha, Asha Rao! {{coupon}}"


def test_fallback_name():
    assert customer_values({})["name"] == "Customer"
    assert contact_values({"name": "Ravi Kumar"}) == {"name": "Ravi Kumar", "first_name": "Ravi", "last_name": "Kumar", "email": ""}
    assert contact_values(None)["first_name"] == "Customer"


def test_nested_template_components():
    components = [{"type": "body", "parameters": [{"type": "text", "text": "{{first_name}}"}, {"type": "currency", "amount": 100}]}]
    result = personalize_value(components, {"first_name": "Asha"})
    assert result[0]["parameters"][0]["text"] == "Asha"
    assert result[0]["parameters"][1]["amount"] == 100


def test_empty_text():
    assert personalize(None, {"name": "x"}) == ""
