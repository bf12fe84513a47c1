"""
Template payload builder — turns a stored template plus per-recipient
variables into a WhatsApp Cloud API `template` message body.

Stored templates carry Meta's structural definition, including `example`
blocks used during approval. Those are sample data and must never be sent.

Variables may be given as:
  ["Ana", "INV-1"]                         positional body parameters
  {"1": "Ana", "2": "INV-1"}               numbered body parameters
  {"header": [...], "body": [...],         explicit sections
   "buttons": {"0": ["abc123"]}}
"""
from __future__ import annotations

import copy
from typing import Any, Optional, Union

from models.errors import TemplatePayloadError
from models.schemas import TemplateDefinition

Variables = Union[list[Any], dict[str, Any], None]

_SECTION_KEYS = {"header", "body", "buttons"}


def strip_examples(value: Any) -> Any:
    """Return a deep copy of `value` with every `example` key removed."""
    if isinstance(value, dict):
        return {k: strip_examples(v) for k, v in value.items() if k != "example"}
    if isinstance(value, list):
        return [strip_examples(v) for v in value]
    return copy.deepcopy(value)


def _text_params(values: Any) -> list[dict[str, Any]]:
    if values is None:
        return []
    if isinstance(values, dict):
        values = _ordered_numbered(values)
    elif not isinstance(values, (list, tuple)):
        values = [values]
    return [{"type": "text", "text": str(v)} for v in values]


def _ordered_numbered(values: dict[str, Any]) -> list[Any]:
    try:
        keys = sorted(values, key=lambda k: int(k))
    except (TypeError, ValueError):
        raise TemplatePayloadError(f"variable keys must be numeric: {list(values)}") from None
    return [values[k] for k in keys]


def split_variables(variables: Variables) -> tuple[list[Any], list[Any], dict[str, list[Any]]]:
    """Normalize the accepted variable shapes into (header, body, buttons)."""
    if variables is None:
        return [], [], {}
    if isinstance(variables, list):
        return [], list(variables), {}
    if not isinstance(variables, dict):
        raise TemplatePayloadError(f"unsupported variables type: {type(variables).__name__}")

    if variables and set(variables) <= _SECTION_KEYS:
        header = variables.get("header") or []
        body = variables.get("body") or []
        buttons = variables.get("buttons") or {}
        if isinstance(header, dict):
            header = _ordered_numbered(header)
        if isinstance(body, dict):
            body = _ordered_numbered(body)
        if not isinstance(buttons, dict):
            raise TemplatePayloadError("buttons variables must be keyed by button index")
        return list(header), list(body), {str(k): v for k, v in buttons.items()}

    return [], _ordered_numbered(variables), {}


def build_template_payload(
    template: TemplateDefinition,
    variables: Variables = None,
    media_url: Optional[str] = None,
) -> dict[str, Any]:
    header_vars, body_vars, button_vars = split_variables(variables)
    structure = strip_examples(template.components or [])

    components: list[dict[str, Any]] = []
    header_emitted = False

    for component in structure:
        ctype = str(component.get("type", "")).upper()

        if ctype == "HEADER":
            fmt = str(component.get("format", "TEXT")).upper()
            if fmt == "IMAGE":
                if not media_url:
                    raise TemplatePayloadError(f"template {template.name} needs a header image")
                components.append(_image_header(media_url))
                header_emitted = True
            elif fmt == "TEXT" and header_vars:
                components.append({"type": "header", "parameters": _text_params(header_vars)})
                header_emitted = True

        elif ctype == "BODY":
            if body_vars:
                components.append({"type": "body", "parameters": _text_params(body_vars)})

        elif ctype == "BUTTONS":
            for index, button in enumerate(component.get("buttons") or []):
                values = button_vars.get(str(index))
                if not values:
                    continue
                components.append({
                    "type": "button",
                    "sub_type": str(button.get("type", "URL")).lower(),
                    "index": str(index),
                    "parameters": _text_params(values),
                })

    # Caller-supplied media wins even when the template has no image header
    if media_url and not header_emitted:
        components.insert(0, _image_header(media_url))

    # Body params supplied for a template that declares no BODY component
    if body_vars and not any(c["type"] == "body" for c in components):
        components.append({"type": "body", "parameters": _text_params(body_vars)})

    body: dict[str, Any] = {
        "name": template.name,
        "language": {"code": template.language},
    }
    if components:
        body["components"] = components
    return {"type": "template", "template": body}


def _image_header(media_url: str) -> dict[str, Any]:
    return {"type": "header", "parameters": [{"type": "image", "image": {"link": media_url}}]}
