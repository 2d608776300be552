import os
from dataclasses import dataclass, replace


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./slotpay.db"

    # 'midtrans' | 'mock'
    gateway: str = "mock"
    midtrans_server_key: str = "SB-Mid-server-dev"
    midtrans_is_production: bool = False
    public_base_url: str = "http://localhost:8000"

    # identity collaborator (supabase-style /auth/v1/user)
    auth_url: str = ""
    auth_anon_key: str = ""
    # "token:user_id,..." static tokens when no auth service is configured
    dev_tokens: str = ""

    studio_timezone: str = "Asia/Jakarta"
    session_duration_minutes: int = 150
    # pending outcomes this long past payment expiry are applied as expired
    expiry_grace_seconds: int = 300
    pickup_window_days: int = 7

    # 'sql' | 'redis'
    audit_backend: str = "sql"
    redis_url: str = "redis://127.0.0.1:6379"

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    log_level: str = "INFO"
    log_json: bool = False

    currency: str = "idr"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get(
                "DATABASE_URL", "sqlite:///./slotpay.db"),
            gateway=os.environ.get("GATEWAY", "mock").lower(),
            midtrans_server_key=os.environ.get(
                "MIDTRANS_SERVER_KEY", "SB-Mid-server-dev"),
            midtrans_is_production=_env_bool("MIDTRANS_IS_PRODUCTION"),
            public_base_url=os.environ.get(
                "PUBLIC_BASE_URL", "http://localhost:8000"),
            auth_url=os.environ.get("AUTH_URL", ""),
            auth_anon_key=os.environ.get("AUTH_ANON_KEY", ""),
            dev_tokens=os.environ.get("DEV_TOKENS", ""),
            studio_timezone=os.environ.get("STUDIO_TIMEZONE", "Asia/Jakarta"),
            session_duration_minutes=int(
                os.environ.get("SESSION_DURATION_MINUTES", "150")),
            expiry_grace_seconds=int(
                os.environ.get("EXPIRY_GRACE_SECONDS", "300")),
            pickup_window_days=int(os.environ.get("PICKUP_WINDOW_DAYS", "7")),
            audit_backend=os.environ.get("AUDIT_BACKEND", "sql").lower(),
            redis_url=os.environ.get("REDIS_URL", "redis://127.0.0.1:6379"),
            session_secret=os.environ.get(
                "SESSION_SECRET", "dev-secret-change-me"),
            admin_username=os.environ.get("ADMIN_USERNAME", "admin"),
            admin_password=os.environ.get("ADMIN_PASSWORD", "supasecret"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("LOG_JSON"),
        )

    def with_overrides(self, **kw) -> "Settings":
        return replace(self, **kw)

    def dev_token_map(self) -> dict:
        out = {}
        for pair in self.dev_tokens.split(","):
            token, _, user_id = pair.strip().partition(":")
            if token and user_id:
                out[token] = user_id
        return out
