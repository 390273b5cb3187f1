"""
Template rendering for target record values.

Templates reference extracted values with ``{{ .key }}`` placeholders and
may pipe them through filters, e.g. ``{{ .password | b64enc }}``. Every
templated field sees the full extracted set, so one secret can be
composed from several others.
"""

import base64
import binascii
import re
from typing import Callable, Dict, Optional

from errors import TemplateRenderError
from models import SecretTemplate

_PLACEHOLDER_RE = re.compile(
    r"\{\{\s*\.([A-Za-z0-9_.\-]+)((?:\s*\|\s*[A-Za-z0-9_]+)*)\s*\}\}"
)


def _b64dec(value: str) -> str:
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"cannot base64-decode value: {e}")


FILTERS: Dict[str, Callable[[str], str]] = {
    "b64enc": lambda v: base64.b64encode(v.encode("utf-8")).decode("ascii"),
    "b64dec": _b64dec,
    "upper": str.upper,
    "lower": str.lower,
    "trim": str.strip,
}


def render_string(
    field: str, text: str, scope: Dict[str, bytes]
) -> bytes:
    """
    Render a single template string against the extracted scope.

    Raises:
        TemplateRenderError: On unknown references or filters, actions that
            are not placeholders, values that are not UTF-8, or filter
            failures.
    """
    # Delimiters left once placeholders are removed are unparseable actions
    remainder = _PLACEHOLDER_RE.sub("", text)
    if "{{" in remainder or "}}" in remainder:
        raise TemplateRenderError(
            f"template for '{field}' contains an unsupported action: {text!r}"
        )

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in scope:
            raise TemplateRenderError(
                f"template for '{field}' references unknown key '{name}'"
            )
        try:
            value = scope[name].decode("utf-8")
        except UnicodeDecodeError:
            raise TemplateRenderError(
                f"template for '{field}' references non-text value '{name}'"
            )

        filters = [f.strip() for f in match.group(2).split("|") if f.strip()]
        for filter_name in filters:
            fn = FILTERS.get(filter_name)
            if fn is None:
                raise TemplateRenderError(
                    f"template for '{field}' uses unknown filter '{filter_name}'"
                )
            try:
                value = fn(value)
            except ValueError as e:
                raise TemplateRenderError(
                    f"template for '{field}' failed in filter '{filter_name}': {e}"
                )
        return value

    return _PLACEHOLDER_RE.sub(_replace, text).encode("utf-8")


def render(
    extracted: Dict[str, bytes], template: Optional[SecretTemplate]
) -> Dict[str, bytes]:
    """
    Compute final record values from the extracted set.

    Args:
        extracted: Extracted values keyed by target key.
        template: Optional template; None passes values through unchanged.

    Returns:
        The rendered key/value map.
    """
    if template is None:
        return dict(extracted)

    rendered = {
        field: render_string(field, text, extracted)
        for field, text in template.data.items()
    }

    if template.merge_policy == "Replace":
        return rendered

    result = dict(extracted)
    result.update(rendered)
    return result
