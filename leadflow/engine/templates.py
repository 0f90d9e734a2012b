"""
Message template rendering — {{variable}} substitution for notifications and outreach.
"""
import re
from typing import Dict, Optional

from leadflow.engine.base import LeadSnapshot

_PLACEHOLDER = re.compile(r'\{\{\s*(\w+)\s*\}\}')

DEFAULT_FIRST_NAME = 'there'


def lead_variables(lead: LeadSnapshot, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Standard variables every template can use."""
    first = lead.first_name or DEFAULT_FIRST_NAME
    variables = {
        'first_name': first,
        'nome': first,
        'lead_name': lead.name or first,
        'nome_completo': lead.name or first,
    }
    if extra:
        variables.update({k: '' if v is None else str(v) for k, v in extra.items()})
    return variables


def render_message(template: str, variables: Dict[str, str]) -> str:
    """Replace {{key}} placeholders; unknown placeholders are left untouched."""
    if not template:
        return ''

    def _sub(match):
        key = match.group(1)
        if key in variables:
            return variables[key]
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, template)
