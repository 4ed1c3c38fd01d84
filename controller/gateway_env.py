"""
Environment Builder: map controller configuration onto the variables the
clawdbot gateway expects.

Pure function of its input. The controller calls it once at startup (so a
half-configured deployment refuses to serve) and again for every spawn.
"""

from typing import Mapping

GLM_ANTHROPIC_BASE_URL = "https://api.z.ai/api/anthropic"

# Reported as one key when no provider credential is present.
PROVIDER_KEYS = ("ANTHROPIC_API_KEY", "AI_GATEWAY_API_KEY", "GLM_API_KEY", "OPENAI_API_KEY")

PASSTHROUGH_KEYS = (
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_DM_POLICY",
    "DISCORD_BOT_TOKEN",
    "DISCORD_DM_POLICY",
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "CDP_SECRET",
    "WORKER_URL",
)


class MissingConfiguration(Exception):
    """Required configuration is absent. `missing` names exactly which keys."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required configuration: {', '.join(self.missing)}")


def _get(config: Mapping[str, str], key: str) -> str:
    return (config.get(key) or "").strip()


def _provider_env(config: Mapping[str, str]) -> tuple[dict[str, str], list[str]]:
    """Pick the AI provider credentials. First match in declared order wins."""
    gateway_key = _get(config, "AI_GATEWAY_API_KEY")
    if gateway_key:
        base_url = _get(config, "AI_GATEWAY_BASE_URL").rstrip("/")
        if not base_url:
            return {}, ["AI_GATEWAY_BASE_URL"]
        if base_url.endswith("/openai"):
            return {"OPENAI_API_KEY": gateway_key, "OPENAI_BASE_URL": base_url}, []
        return {"ANTHROPIC_API_KEY": gateway_key, "ANTHROPIC_BASE_URL": base_url}, []

    anthropic_key = _get(config, "ANTHROPIC_API_KEY")
    if anthropic_key:
        env = {"ANTHROPIC_API_KEY": anthropic_key}
        if _get(config, "ANTHROPIC_BASE_URL"):
            env["ANTHROPIC_BASE_URL"] = _get(config, "ANTHROPIC_BASE_URL")
        return env, []

    glm_key = _get(config, "GLM_API_KEY")
    if glm_key:
        return {"ANTHROPIC_API_KEY": glm_key, "ANTHROPIC_BASE_URL": GLM_ANTHROPIC_BASE_URL}, []

    openai_key = _get(config, "OPENAI_API_KEY")
    if openai_key:
        return {"OPENAI_API_KEY": openai_key}, []

    return {}, ["|".join(PROVIDER_KEYS)]


def build_gateway_env(config: Mapping[str, str]) -> dict[str, str]:
    """
    Build the gateway process environment from external configuration.

    Raises:
        MissingConfiguration: listing every absent required key
    """
    missing: list[str] = []
    dev_mode = _get(config, "DEV_MODE").lower() == "true"

    env: dict[str, str] = {"CLAWDBOT_BIND_MODE": "lan"}

    token = _get(config, "MOLTBOT_GATEWAY_TOKEN")
    if token:
        env["CLAWDBOT_GATEWAY_TOKEN"] = token
    elif not dev_mode:
        missing.append("MOLTBOT_GATEWAY_TOKEN")

    if dev_mode:
        env["CLAWDBOT_DEV_MODE"] = "true"

    provider_env, provider_missing = _provider_env(config)
    env.update(provider_env)
    missing.extend(provider_missing)

    for key in PASSTHROUGH_KEYS:
        if _get(config, key):
            env[key] = _get(config, key)

    if missing:
        raise MissingConfiguration(missing)
    return env
