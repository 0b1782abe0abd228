"""Config management for mcp-oauth-broker.

Settings come from the environment. A local .env file is loaded first
so development values can live next to the code.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


CONFIG_DIR = Path.home() / ".mcp-oauth-broker"

DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_RESOURCE_PATH = "/api/mcp"
DEFAULT_SCOPE = "openid profile email mcp:read mcp:write"


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    @property
    def base_url(self) -> str:
        return (self.data.get("BASE_URL") or DEFAULT_BASE_URL).rstrip("/")

    @property
    def resource_path(self) -> str:
        return self.data.get("RESOURCE_PATH") or DEFAULT_RESOURCE_PATH

    @property
    def resource_url(self) -> str:
        """Resource identifier tokens are bound to (RFC 8707)."""
        return f"{self.base_url}{self.resource_path}"

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.base_url}/.well-known/oauth-protected-resource"

    @property
    def provider_redirect_uri(self) -> str:
        """Callback registered with the upstream provider."""
        return f"{self.base_url}/api/auth/callback"

    @property
    def google_client_id(self) -> Optional[str]:
        return self.data.get("GOOGLE_CLIENT_ID")

    @property
    def google_client_secret(self) -> Optional[str]:
        return self.data.get("GOOGLE_CLIENT_SECRET")

    @property
    def jwt_secret(self) -> Optional[str]:
        return self.data.get("JWT_SECRET")

    @property
    def environment(self) -> str:
        return (self.data.get("ENVIRONMENT") or "development").lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def security_mode(self) -> str:
        """LIVE blocks denied requests, DRY_RUN only logs them."""
        mode = self.data.get("SECURITY_MODE")
        if mode:
            return mode.upper()
        return "LIVE" if self.is_production else "DRY_RUN"

    @property
    def require_state(self) -> bool:
        return _as_bool(self.data.get("REQUIRE_STATE"))

    @property
    def default_scope(self) -> str:
        return self.data.get("DEFAULT_SCOPE") or DEFAULT_SCOPE

    @property
    def token_verify_timeout(self) -> float:
        return float(self.data.get("TOKEN_VERIFY_TIMEOUT") or 5.0)

    @property
    def upstream_timeout(self) -> float:
        return float(self.data.get("UPSTREAM_TIMEOUT") or 10.0)

    @property
    def access_token_ttl(self) -> int:
        return int(self.data.get("ACCESS_TOKEN_TTL") or 3600)

    @property
    def supabase_url(self) -> Optional[str]:
        return self.data.get("SUPABASE_URL")

    @property
    def supabase_anon_key(self) -> Optional[str]:
        return self.data.get("SUPABASE_ANON_KEY")

    @property
    def log_level(self) -> str:
        return (self.data.get("LOG_LEVEL") or "INFO").upper()

    @property
    def forwarded_allow_ips(self) -> list[str]:
        """Proxies whose X-Forwarded-For is trusted for the client address."""
        raw = self.data.get("FORWARDED_ALLOW_IPS") or "127.0.0.1"
        return [ip.strip() for ip in raw.split(",") if ip.strip()]

    @property
    def host(self) -> str:
        return self.data.get("HOST") or "0.0.0.0"

    @property
    def port(self) -> int:
        return int(self.data.get("PORT") or 3000)

    def has_provider(self) -> bool:
        """Check if the upstream provider credentials are present."""
        return bool(self.google_client_id and self.google_client_secret)


def load_config(env_file: Optional[Path] = None) -> Config:
    """Load config from the environment (after reading .env, if any)."""
    env_file = env_file or Path(".env")
    if env_file.exists():
        load_dotenv(env_file)
    return Config(dict(os.environ))
