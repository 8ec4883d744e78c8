"""Per-recipient personalisation of campaign content."""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional

PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")
DEFAULT_LEAD_NAME = "Cliente"


def render(template: Optional[str], variables: Mapping[str, Any]) -> str:
    """Replace ``{{ key }}`` placeholders with values from ``variables``.

    Unknown placeholders are left untouched so that a typo is visible in the
    delivered email rather than silently blanked.
    """
    if not template:
        return ""

    def _sub(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        value = variables[key]
        return "" if value is None else str(value)

    return PLACEHOLDER_RE.sub(_sub, template)


def lead_variables(lead: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the variables available to templates for one lead."""
    variables: Dict[str, Any] = {
        "name": lead.get("name") or DEFAULT_LEAD_NAME,
        "email": lead.get("email") or "",
        "company": lead.get("company") or "",
        "position": lead.get("position") or "",
        "phone": lead.get("phone") or "",
    }
    custom = lead.get("custom_fields") or {}
    if isinstance(custom, Mapping):
        for key, value in custom.items():
            variables.setdefault(str(key), value)
    return variables
