# /engage/campaigns/personalization.py

import re
from typing import Any, Dict, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def personalize(text: Optional[str], values: Dict[str, Any]) -> str:
    """Replace `{{key}}` placeholders that have a value; unknown placeholders stay as written."""
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in values and values[key] is not None:
            return str(values[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def personalize_value(value: Any, values: Dict[str, Any]) -> Any:
    """Apply `personalize` to every string inside nested template components."""
    if isinstance(value, str):
        return personalize(value, values)
    if isinstance(value, list):
        return [personalize_value(item, values) for item in value]
    if isinstance(value, dict):
        return {key: personalize_value(item, values) for key, item in value.items()}
    return value


def customer_values(customer: Optional[Dict[str, Any]], fallback_name: str = "Customer") -> Dict[str, str]:
    """Placeholder values for a Shopify-shaped customer dict."""
    customer = customer or {}
    first_name = (customer.get("first_name") or "").strip()
    last_name = (customer.get("last_name") or "").strip()
    full_name = " ".join(part for part in (first_name, last_name) if part)
    return {
        "name": full_name or fallback_name,
        "first_name": first_name,
        "last_name": last_name,
        "email": customer.get("email") or "",
    }


def contact_values(contact: Optional[Dict[str, Any]], fallback_name: str = "Customer") -> Dict[str, str]:
    """Placeholder values for an inbox contact, which only carries a display name."""
    contact = contact or {}
    name = (contact.get("name") or "").strip()
    parts = name.split()
    return {
        "name": name or fallback_name,
        "first_name": parts[0] if parts else fallback_name,
        "last_name": " ".join(parts[1:]),
        "email": contact.get("email") or "",
    }
