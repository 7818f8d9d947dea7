"""Request configuration validation."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from agent_sidecar.errors import InvalidConfigError

# Checked in this order; the first failure is reported.
REQUIRED_FIELDS = (("prompt", "prompt"), ("apiKey", "api_key"), ("cwd", "cwd"))


class RequestConfig(BaseModel):
    """Validated payload for `agent_request` and `stream_start`."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    prompt: str
    api_key: SecretStr = Field(alias="apiKey")
    cwd: str
    model: str | None = None
    system_prompt: str | None = Field(default=None, alias="systemPrompt")


def _non_blank(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _optional_str(raw: dict[str, Any], wire_name: str, attr: str) -> str | None:
    value = raw.get(wire_name, raw.get(attr))
    return value if isinstance(value, str) else None


def parse_request_config(raw: Any) -> RequestConfig:
    """Validate a raw configuration mapping.

    Raises InvalidConfigError naming the first missing field, checked in the
    order prompt, apiKey, cwd. Non-string optional fields are dropped.
    """

    if isinstance(raw, RequestConfig):
        return raw
    if not isinstance(raw, dict):
        raise InvalidConfigError("Invalid config: expected object")

    values: dict[str, Any] = {}
    for wire_name, attr in REQUIRED_FIELDS:
        value = raw.get(wire_name, raw.get(attr))
        if not _non_blank(value):
            raise InvalidConfigError(f"Invalid config: missing {wire_name}")
        values[attr] = value

    return RequestConfig(
        prompt=values["prompt"],
        api_key=SecretStr(values["api_key"]),
        cwd=values["cwd"],
        model=_optional_str(raw, "model", "model"),
        system_prompt=_optional_str(raw, "systemPrompt", "system_prompt"),
    )


__all__ = ["RequestConfig", "parse_request_config"]
