from __future__ import annotations

from decimal import Decimal
import json
import math
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, RootModel, model_validator

# Env vars named with this prefix in a signed field list are read from the job env.
ENV_NAMESPACE_PREFIX = "env::"

DEFAULT_PLUGIN_HOST = "github.com"
DEFAULT_PLUGIN_ORG = "buildkite-plugins"
PLUGIN_REPO_SUFFIX = "-buildkite-plugin"

_JSON_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def canonical_json(value: Any) -> str:
    """Encode ``value`` as compact JSON with sorted keys.

    The output matches what other agents and the backend produce for the same
    value. Non-ASCII text is kept literal while HTML-sensitive characters and
    the JS line separators are escaped. Every number is read as a 64-bit float
    and written in its shortest form, so ``3.0`` becomes ``3``, ``-0.0`` stays
    ``-0`` and integers past 2**53 lose the digits a double cannot hold.
    Raises ``ValueError`` for NaN/Infinity and ``TypeError`` for values that
    have no JSON form.
    """
    parts: list[str] = []
    _encode(value, parts)
    return "".join(parts)


def format_number(value: float) -> str:
    if not math.isfinite(value):
        raise ValueError(f"unsupported float value: {value!r}")
    magnitude = abs(value)
    if magnitude != 0 and (magnitude < 1e-6 or magnitude >= 1e21):
        # repr already gives the shortest digits; only a leading exponent zero differs.
        text = repr(value)
        mantissa, _, exponent = text.partition("e")
        sign, digits = exponent[0], exponent[1:].lstrip("0")
        if sign == "-":
            return f"{mantissa}e-{digits}"
        return f"{mantissa}e{sign}{digits.zfill(2)}"
    return format(Decimal(repr(value)).normalize(), "f")


def _encode(value: Any, parts: list[str]) -> None:
    if value is None:
        parts.append("null")
    elif value is True:
        parts.append("true")
    elif value is False:
        parts.append("false")
    elif isinstance(value, str):
        parts.append(_encode_string(value))
    elif isinstance(value, (int, float)):
        parts.append(format_number(float(value)))
    elif isinstance(value, dict):
        if not all(isinstance(key, str) for key in value):
            raise TypeError("JSON object keys must be strings")
        parts.append("{")
        for index, key in enumerate(sorted(value)):
            if index:
                parts.append(",")
            parts.append(_encode_string(key))
            parts.append(":")
            _encode(value[key], parts)
        parts.append("}")
    elif isinstance(value, (list, tuple)):
        parts.append("[")
        for index, item in enumerate(value):
            if index:
                parts.append(",")
            _encode(item, parts)
        parts.append("]")
    else:
        raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _encode_string(value: str) -> str:
    encoded = json.dumps(value, ensure_ascii=False)
    for raw, escaped in _JSON_ESCAPES:
        encoded = encoded.replace(raw, escaped)
    return encoded


class Plugin(BaseModel):
    source: str
    config: Any = None

    def full_source(self) -> str:
        """Expand shorthand sources like ``docker#v5.0.0`` to their repository form."""
        if not self.source or "://" in self.source or self.source.startswith((".", "/")):
            return self.source

        name, hash_sign, version = self.source.partition("#")
        parts = name.split("/")
        if len(parts) == 1:
            parts = [DEFAULT_PLUGIN_HOST, DEFAULT_PLUGIN_ORG, parts[0]]
        elif len(parts) == 2:
            parts = [DEFAULT_PLUGIN_HOST, *parts]
        else:
            return self.source

        if not parts[-1].endswith(PLUGIN_REPO_SUFFIX):
            parts[-1] += PLUGIN_REPO_SUFFIX
        return "/".join(parts) + hash_sign + version

    def canonical(self) -> Any:
        if self.config is None:
            return self.full_source()
        return {self.full_source(): self.config}


class Plugins(RootModel[list[Plugin] | None]):
    """Plugin list in either wire form: a sequence of items or one ordered mapping.

    A ``null`` list stays ``None`` so that it re-serializes as ``null``.
    """

    root: list[Plugin] | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_wire_forms(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return _mapping_plugins(data)
        if isinstance(data, list):
            return [plugin for item in data for plugin in _coerce_plugin(item)]
        return data

    @classmethod
    def from_json(cls, raw: str) -> Plugins:
        # Numbers are doubles on every producer, so integers are read as floats too.
        return cls.model_validate(json.loads(raw, parse_int=float))

    def canonical(self) -> list[Any] | None:
        if self.root is None:
            return None
        return [plugin.canonical() for plugin in self.root]

    def to_canonical_json(self) -> str:
        return canonical_json(self.canonical())

    def __iter__(self) -> Iterator[Plugin]:  # type: ignore[override]
        return iter(self.root or [])

    def __len__(self) -> int:
        return len(self.root or [])


class StepSignature(BaseModel):
    algorithm: str = ""
    signed_fields: list[str] = Field(default_factory=list)
    value: str = ""


class CommandStep(BaseModel):
    command: str = ""
    plugins: Plugins | None = None
    env: dict[str, str] = Field(default_factory=dict)
    signature: StepSignature | None = None

    # Keys this agent does not interpret are kept verbatim.
    model_config = ConfigDict(extra="allow")


def _mapping_plugins(mapping: dict[str, Any]) -> list[dict[str, Any]]:
    return [{"source": source, "config": config} for source, config in mapping.items()]


def _coerce_plugin(item: Any) -> list[Any]:
    # A mapping item that is not in single-key normal form still yields its plugins in key order.
    if isinstance(item, str):
        return [{"source": item}]
    if isinstance(item, dict):
        return _mapping_plugins(item)
    return [item]
