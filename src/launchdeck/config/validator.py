"""Turn pydantic validation failures into config-file error lines."""

from pydantic import ValidationError as PydanticValidationError

# Error types whose pydantic wording is replaced with a config-oriented one.
_REWORDED = {
    "missing": "required field is missing",
    "extra_forbidden": "unknown option",
}


def _field_path(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "config"


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Return one ``Field '<path>': <reason>`` line per validation error.

    Custom validator failures carry the rejected value so the operator can
    find it in the YAML file.
    """
    lines = []
    for error in exc.errors():
        kind = error.get("type", "")
        reason = _REWORDED.get(kind) or error.get("msg", "invalid value")
        if kind == "value_error":
            reason = f"{reason} (received: {error.get('input')!r})"
        lines.append(f"Field '{_field_path(tuple(error.get('loc', ())))}': {reason}")
    return lines or ["Validation failed with unknown error"]
