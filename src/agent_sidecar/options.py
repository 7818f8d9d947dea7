"""Build the options bundle handed to the agent engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from agent_sidecar.config import RequestConfig
from agent_sidecar.settings import DEFAULT_MODEL, SidecarSettings

PROVIDER_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

_MODEL_PREFIXES = (
    ("claude", "anthropic"),
    ("gpt", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("gemini", "google"),
)


@dataclass(frozen=True)
class SettingsProfile:
    """Fixed engine settings applied to every conversation."""

    setting_sources: tuple[str, ...] = ("project",)
    system_prompt_preset: str = "workspace"


@dataclass(frozen=True)
class SessionOptions:
    model: str
    cwd: str
    env: Mapping[str, str] = field(repr=False)
    profile: SettingsProfile = field(default_factory=SettingsProfile)
    resumable: bool = False

    @property
    def provider(self) -> str:
        return provider_for_model(self.model)

    @property
    def model_name(self) -> str:
        _, sep, name = self.model.partition(":")
        return name if sep else self.model


def provider_for_model(model: str) -> str:
    """Resolve the provider for `provider:name` or a bare model name."""

    prefix, sep, _ = model.partition(":")
    if sep:
        return prefix.lower()
    lowered = model.lower()
    if lowered == "test":
        return "test"
    for start, provider in _MODEL_PREFIXES:
        if lowered.startswith(start):
            return provider
    return "anthropic"


def build_session_options(
    config: RequestConfig,
    settings: SidecarSettings | None = None,
    *,
    base_env: Mapping[str, str] | None = None,
    resumable: bool = False,
) -> SessionOptions:
    default_model = settings.default_model if settings is not None else DEFAULT_MODEL
    model = (config.model or "").strip() or default_model

    env = dict(os.environ if base_env is None else base_env)
    key_var = PROVIDER_KEY_ENV.get(provider_for_model(model))
    if key_var is not None:
        env[key_var] = config.api_key.get_secret_value()

    return SessionOptions(model=model, cwd=config.cwd, env=env, resumable=resumable)


def build_initial_prompt(config: RequestConfig) -> str:
    """Prepend the system prompt (if any) to the user prompt, separated by a blank line."""

    system = (config.system_prompt or "").strip()
    if not system:
        return config.prompt
    return f"{system}\n\n{config.prompt}"
