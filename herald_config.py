"""
herald_config.py — Settings for the Herald gateway.

Values come from an optional herald.yaml (path from --config or HERALD_CONFIG)
and are overridden by HERALD_* environment variables. A minimal file:

    issuer_url: https://herald.example.com
    consent_url: https://app.example.com/auth/agent
    federated:
      issuer: https://securetoken.google.com/my-project
      audience: my-project
      jwks_url: https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com
    principals:
      local-dev:
        email: dev@example.com
        tier: pro
    local_principal: local-dev

The signing secret should come from the environment, not the file.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SCOPES = ["briefings:read", "briefings:write"]
DEFAULT_TIER_LIMITS = {"free": 10, "pro": 60, "enterprise": 200}

ACCESS_TOKEN_TTL = 7 * 86400  # 7 days
REFRESH_TOKEN_TTL = 30 * 86400  # 30 days
AUTH_CODE_TTL = 600  # 10 minutes
PENDING_TTL = 900  # 15 minutes


@dataclass
class PrincipalSeed:
    id: str
    email: str = ""
    display_name: str = ""
    tier: str = "free"


@dataclass
class Settings:
    issuer_url: str = "http://localhost:8080"
    signing_secret: str | None = None
    access_token_ttl: int = ACCESS_TOKEN_TTL
    refresh_token_ttl: int = REFRESH_TOKEN_TTL
    auth_code_ttl: int = AUTH_CODE_TTL
    pending_ttl: int = PENDING_TTL
    consent_url: str = "https://protime.ai/auth/chatgpt"
    callback_url: str = ""
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    sweep_interval: int = 600
    session_idle_ttl: int = 3600
    shutdown_grace: float = 10.0
    store_path: str | None = None
    environment: str = "production"
    federated_issuer: str | None = None
    federated_audience: str | None = None
    federated_jwks_url: str | None = None
    principals: list[PrincipalSeed] = field(default_factory=list)
    local_principal: str | None = None
    auth_rate_limit: int = 10
    auth_rate_window: int = 60
    tier_limits: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))

    def __post_init__(self) -> None:
        self.issuer_url = self.issuer_url.rstrip("/")
        if not self.callback_url:
            self.callback_url = f"{self.issuer_url}/auth/callback"

    @property
    def development(self) -> bool:
        return self.environment == "development"

    @property
    def federation_enabled(self) -> bool:
        return bool(self.federated_issuer and self.federated_jwks_url)

    def validate_for_network(self) -> None:
        """Fail closed: the network listener never runs without a signing key."""
        if not self.signing_secret:
            raise ValueError("HERALD_SIGNING_SECRET is required for the streamable-http transport")
        if len(self.signing_secret) < 32:
            raise ValueError("HERALD_SIGNING_SECRET must be at least 32 characters")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "HERALD_ISSUER_URL": ("issuer_url", str),
    "HERALD_SIGNING_SECRET": ("signing_secret", str),
    "HERALD_ACCESS_TOKEN_TTL": ("access_token_ttl", int),
    "HERALD_REFRESH_TOKEN_TTL": ("refresh_token_ttl", int),
    "HERALD_AUTH_CODE_TTL": ("auth_code_ttl", int),
    "HERALD_PENDING_TTL": ("pending_ttl", int),
    "HERALD_CONSENT_URL": ("consent_url", str),
    "HERALD_CALLBACK_URL": ("callback_url", str),
    "HERALD_SWEEP_INTERVAL": ("sweep_interval", int),
    "HERALD_SESSION_IDLE_TTL": ("session_idle_ttl", int),
    "HERALD_SHUTDOWN_GRACE": ("shutdown_grace", float),
    "HERALD_STORE_PATH": ("store_path", str),
    "HERALD_ENV": ("environment", str),
    "HERALD_FEDERATED_ISSUER": ("federated_issuer", str),
    "HERALD_FEDERATED_AUDIENCE": ("federated_audience", str),
    "HERALD_FEDERATED_JWKS_URL": ("federated_jwks_url", str),
    "HERALD_LOCAL_PRINCIPAL": ("local_principal", str),
    "HERALD_AUTH_RATE_LIMIT": ("auth_rate_limit", int),
    "HERALD_AUTH_RATE_WINDOW": ("auth_rate_window", int),
}


def _read_yaml(config_path: Path) -> dict[str, Any]:
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise SystemExit(f"Invalid config {config_path}: expected a mapping at the top level")
    return raw


def _principal_seeds(raw: Any, config_path: Path | None) -> list[PrincipalSeed]:
    if not raw:
        return []
    if not isinstance(raw, dict):
        raise SystemExit(f"Invalid 'principals' in {config_path}: expected a mapping")
    seeds = []
    for principal_id, cfg in raw.items():
        cfg = cfg or {}
        tier = str(cfg.get("tier", "free")).lower()
        if tier not in DEFAULT_TIER_LIMITS:
            raise SystemExit(
                f"Invalid tier '{tier}' for principal '{principal_id}'. "
                f"Valid options: {', '.join(DEFAULT_TIER_LIMITS)}"
            )
        seeds.append(PrincipalSeed(
            id=str(principal_id),
            email=cfg.get("email", ""),
            display_name=cfg.get("display_name", ""),
            tier=tier,
        ))
    return seeds


def load_settings(config_path: Path | str | None = None,
                  environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from herald.yaml (if any) plus HERALD_* overrides."""
    env = os.environ if environ is None else environ
    if config_path is None and env.get("HERALD_CONFIG"):
        config_path = env["HERALD_CONFIG"]
    path = Path(config_path) if config_path else None

    values: dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise SystemExit(f"Config not found: {path}")
        raw = _read_yaml(path)
        federated = raw.pop("federated", None) or {}
        for key in ("issuer", "audience", "jwks_url"):
            if key in federated:
                values[f"federated_{key}"] = federated[key]
        values["principals"] = _principal_seeds(raw.pop("principals", None), path)
        if isinstance(raw.get("scopes"), str):
            raw["scopes"] = raw["scopes"].split()
        known = Settings.__dataclass_fields__
        unknown = sorted(k for k in raw if k not in known)
        if unknown:
            raise SystemExit(f"Unknown settings in {path}: {', '.join(unknown)}")
        values.update(raw)

    for var, (name, cast) in _ENV_FIELDS.items():
        if var in env and env[var] != "":
            try:
                values[name] = cast(env[var])
            except ValueError:
                raise SystemExit(f"Invalid value for {var}: {env[var]!r}")
    if env.get("HERALD_SCOPES"):
        values["scopes"] = env["HERALD_SCOPES"].split()

    return Settings(**values)
