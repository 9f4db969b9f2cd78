from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Background build callbacks write with this key

    # Deploy backend: "sprites" (sandbox containers) or "fly" (Fly.io machines + flyctl)
    deploy_backend: str = "sprites"
    resource_name_prefix: str = "opflow"

    # Sprites
    sprites_api_token: Optional[str] = None
    sprites_api_base: str = "https://api.sprites.dev"

    # Fly.io
    fly_api_token: Optional[str] = None
    fly_api_base: str = "https://api.machines.dev"
    fly_graphql_url: str = "https://api.fly.io/graphql"
    fly_org_slug: str = "personal"
    flyctl_path: str = "flyctl"
    fly_workdir: str = "/tmp/opflow-builds"  # Staged sources per app, one subdirectory each

    # Upstream calls
    upstream_timeout_sec: float = 30.0
    upstream_max_attempts: int = 5
    upstream_retry_delay_sec: float = 3.0  # Multiplied by the attempt number

    # Wake / liveness
    wake_max_attempts: int = 10
    wake_timeout_sec: float = 10.0
    wake_interval_sec: float = 3.0
    liveness_timeout_sec: float = 3.0
    secrets_import_timeout_sec: float = 15.0
    runtime_logs_timeout_sec: float = 30.0

    # Builds
    build_poll_interval_sec: float = 5.0
    build_watch_timeout_sec: float = 1800.0
    build_error_tail_chars: int = 500

    # App
    app_name: str = "opflow-deploy"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
