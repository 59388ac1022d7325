"""Template variable substitution for port email templates.

Port templates carry placeholders such as ``{ship_name}`` and ``{port}``.
They are replaced once, when a job is created, so the dispatcher only ever
sees final text.
"""

from __future__ import annotations

import re

PLACEHOLDER_PATTERN = re.compile(r"\{([a-z_]+)\}")


def render_template(template: str | None, **variables: str | None) -> str:
    """Replace every ``{name}`` placeholder that has a non-empty value.

    Placeholders without a value are left untouched so that an operator
    sees what is missing.

    Example:
        >>> render_template("{ship_name} // PRE ARRIVAL // {port}", ship_name="MV AURORA", port="TEKIRDAG")
        'MV AURORA // PRE ARRIVAL // TEKIRDAG'
    """
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return value if value else match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, template)
