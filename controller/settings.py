"""
Controller configuration, read once from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


@dataclass(frozen=True)
class Settings:
    environ: Mapping[str, str] = field(default_factory=dict, repr=False)

    # Sandbox / gateway process
    sandbox_mode: str = "docker"
    sandbox_container: str = "moltbot-sandbox"
    gateway_host: str = "127.0.0.1"
    gateway_port: int = 18789
    gateway_command: str = "clawdbot gateway --port {port} --verbose"
    gateway_cli: str = "clawdbot"
    startup_timeout: float = 180.0
    poll_interval: float = 0.5

    # Auth
    gateway_token: str = field(default="", repr=False)
    dev_mode: bool = False
    debug_routes: bool = False
    cf_access_team_domain: str = ""
    cf_access_aud: str = ""
    cdp_secret: str = field(default="", repr=False)
    internal_api_token: str = field(default="", repr=False)

    # CDP shim
    browser_ws_endpoint: str = ""
    worker_url: str = ""

    # R2 storage
    r2_access_key_id: str = field(default="", repr=False)
    r2_secret_access_key: str = field(default="", repr=False)
    cf_account_id: str = ""
    r2_bucket: str = "moltbot-data"
    mount_path: str = "/data/moltbot"
    state_dir: str = "/root/.clawdbot"
    skills_dir: str = "/root/clawd/skills"

    @property
    def launch_command(self) -> str:
        """Gateway start command. Onboarding is skipped and bind config comes from the flag."""
        base = self.gateway_command.format(port=self.gateway_port)
        return f"{base} --allow-unconfigured --bind lan"

    @property
    def access_configured(self) -> bool:
        return bool(self.cf_access_team_domain and self.cf_access_aud)

    @property
    def storage_configured(self) -> bool:
        return bool(self.r2_access_key_id and self.r2_secret_access_key and self.cf_account_id)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from an environment mapping (defaults to os.environ)."""
    env = dict(os.environ if environ is None else environ)
    return Settings(
        environ=env,
        sandbox_mode=env.get("SANDBOX_MODE", "docker"),
        sandbox_container=env.get("SANDBOX_CONTAINER", "moltbot-sandbox"),
        gateway_host=env.get("GATEWAY_HOST", "127.0.0.1"),
        gateway_port=int(env.get("GATEWAY_PORT", "18789")),
        gateway_command=env.get("GATEWAY_COMMAND", "clawdbot gateway --port {port} --verbose"),
        gateway_cli=env.get("GATEWAY_CLI", "clawdbot"),
        startup_timeout=float(env.get("GATEWAY_STARTUP_TIMEOUT", "180")),
        poll_interval=float(env.get("GATEWAY_POLL_INTERVAL", "0.5")),
        gateway_token=env.get("MOLTBOT_GATEWAY_TOKEN", ""),
        dev_mode=_flag(env.get("DEV_MODE")),
        debug_routes=_flag(env.get("DEBUG_ROUTES")),
        cf_access_team_domain=env.get("CF_ACCESS_TEAM_DOMAIN", ""),
        cf_access_aud=env.get("CF_ACCESS_AUD", ""),
        cdp_secret=env.get("CDP_SECRET", ""),
        internal_api_token=env.get("INTERNAL_API_TOKEN", ""),
        browser_ws_endpoint=env.get("BROWSER_WS_ENDPOINT", ""),
        worker_url=env.get("WORKER_URL", ""),
        r2_access_key_id=env.get("R2_ACCESS_KEY_ID", ""),
        r2_secret_access_key=env.get("R2_SECRET_ACCESS_KEY", ""),
        cf_account_id=env.get("CF_ACCOUNT_ID", ""),
        r2_bucket=env.get("R2_BUCKET_NAME", "moltbot-data"),
        mount_path=env.get("R2_MOUNT_PATH", "/data/moltbot"),
        state_dir=env.get("GATEWAY_STATE_DIR", "/root/.clawdbot"),
        skills_dir=env.get("GATEWAY_SKILLS_DIR", "/root/clawd/skills"),
    )
