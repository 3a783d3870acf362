"""Canonical values of job fields, as signed by the pipeline uploader.

Signatures are computed over the strings returned by :func:`values_for_fields`,
so two jobs that mean the same thing must produce byte-identical values here
no matter how the coordinator happened to serialize them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from typing import TYPE_CHECKING, Mapping, Sequence

from pydantic import ValidationError

from bkagent.schemas.pipeline import ENV_NAMESPACE_PREFIX, Plugins

if TYPE_CHECKING:
    from bkagent.schemas.jobs import Job

COMMAND_ENV = "BUILDKITE_COMMAND"
PLUGINS_ENV = "BUILDKITE_PLUGINS"


class FieldKind(str, Enum):
    COMMAND = "command"
    PLUGINS = "plugins"
    ENV = "env"


class CanonicalizationStage(str, Enum):
    UNMARSHAL = "unmarshal"
    MARSHAL = "marshal"


class UnsupportedFieldError(ValueError):
    def __init__(self, field: str) -> None:
        super().__init__(f"unknown or unsupported field on job for signing/verification: {field!r}")
        self.field = field


class CanonicalizationError(ValueError):
    def __init__(self, stage: CanonicalizationStage, env_var: str, cause: Exception) -> None:
        verb = "unmarshaling" if stage is CanonicalizationStage.UNMARSHAL else "re-marshaling"
        super().__init__(f"{verb} {env_var}: {cause}")
        self.stage = stage
        self.env_var = env_var


@dataclass(frozen=True, slots=True)
class SignedField:
    name: str
    kind: FieldKind
    env_var: str


def parse_field(name: str, *, env_prefix: str = ENV_NAMESPACE_PREFIX) -> SignedField:
    if name == FieldKind.COMMAND.value:
        return SignedField(name=name, kind=FieldKind.COMMAND, env_var=COMMAND_ENV)
    if name == FieldKind.PLUGINS.value:
        return SignedField(name=name, kind=FieldKind.PLUGINS, env_var=PLUGINS_ENV)
    if env_prefix and name.startswith(env_prefix):
        return SignedField(name=name, kind=FieldKind.ENV, env_var=name[len(env_prefix) :])
    raise UnsupportedFieldError(name)


def field_for_env(env_var: str, *, env_prefix: str = ENV_NAMESPACE_PREFIX) -> str:
    """Name under which ``env_var`` is listed in a signature's signed fields."""
    if not env_prefix:
        raise ValueError("env_prefix must not be empty")
    return f"{env_prefix}{env_var}"


def values_for_fields(
    job: Job,
    fields: Sequence[str],
    *,
    env_prefix: str = ENV_NAMESPACE_PREFIX,
) -> dict[str, str]:
    # Every name is checked before any value is computed.
    parsed = [parse_field(name, env_prefix=env_prefix) for name in fields]

    values: dict[str, str] = {}
    for field in parsed:
        values[field.name] = _value_for(job.env, field)
    return values


def canonical_plugins(raw: str) -> str:
    if not raw:
        return ""
    try:
        plugins = Plugins.from_json(raw)
    except (json.JSONDecodeError, ValidationError, RecursionError) as exc:
        raise CanonicalizationError(CanonicalizationStage.UNMARSHAL, PLUGINS_ENV, exc) from exc
    try:
        return plugins.to_canonical_json()
    except (TypeError, ValueError, RecursionError) as exc:
        raise CanonicalizationError(CanonicalizationStage.MARSHAL, PLUGINS_ENV, exc) from exc


def _value_for(env: Mapping[str, str], field: SignedField) -> str:
    if field.kind is FieldKind.PLUGINS:
        return canonical_plugins(env.get(field.env_var, ""))
    return env.get(field.env_var, "")
