from __future__ import annotations

import os
from enum import StrEnum
from typing import TypedDict

from .config import settings
from .errors import ChangeloopError


class Provider(StrEnum):
    GEMINI = "gemini"
    CODEX = "codex"
    CLAUDE = "claude"


class Role(StrEnum):
    GENERATOR = "generator"
    CRITIC = "critic"
    IMPLEMENTER = "implementer"


class RoleConfig(TypedDict, total=False):
    provider: str
    model: str
    description: str
    timeout_override: int | None


DEFAULT_ROLE_CONFIG: dict[str, RoleConfig] = {
    "generator": {
        "provider": "gemini",
        "model": "gemini-2.5-pro",
        "description": "Writes and revises proposal, specs and tasks in one resumable session",
    },
    "critic": {
        "provider": "codex",
        "model": "gpt-5.2-codex",
        "description": "Challenges the generated plan and returns a review verdict",
    },
    "implementer": {
        "provider": "claude",
        "model": "claude-sonnet-4-5",
        "description": "Implements the approved task list",
    },
}


def get_env_keys(role: Role) -> dict[str, str]:
    role_upper = role.value.upper()
    return {
        "provider": f"ROLE_{role_upper}_PROVIDER",
        "model": f"ROLE_{role_upper}_MODEL",
        "timeout_override": f"ROLE_{role_upper}_TIMEOUT",
    }


def get_role_from_env(role: Role) -> dict[str, str]:
    result = {}
    for field, env_key in get_env_keys(role).items():
        value = os.getenv(env_key)
        if value:
            result[field] = value
    return result


def resolve_role(role: Role) -> RoleConfig:
    """Default role config with ``ROLE_<ROLE>_*`` environment overrides applied."""
    merged = RoleConfig(**DEFAULT_ROLE_CONFIG[role.value])
    for key, value in get_role_from_env(role).items():
        if key == "timeout_override":
            merged["timeout_override"] = int(value)
        else:
            merged[key] = value  # type: ignore
    if merged["provider"] not in {p.value for p in Provider}:
        raise ChangeloopError(f"Unknown provider for role {role.value}: {merged['provider']}")
    return merged


def provider_command(provider: Provider) -> str:
    return {
        Provider.GEMINI: settings.gemini_cmd,
        Provider.CODEX: settings.codex_cmd,
        Provider.CLAUDE: settings.claude_cmd,
    }[provider]
