from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.3.0"
    database_path: str = "data/videogen.db"
    artifact_dir: str = "artifacts"
    artifact_base_url: str = "http://localhost:8900/artifacts"

    log_level: str = "INFO"
    log_json: bool = False

    runway_api_key: str = ""
    runway_base_url: str = "https://api.dev.runwayml.com"
    runway_api_version: str = "2024-11-06"
    runway_min_poll_delay_sec: int = 10
    runway_max_processing_sec: int = 300

    a2e_api_token: str = ""
    a2e_base_url: str = "https://video.a2e.ai/api/v1/talkingPhoto"
    a2e_min_poll_delay_sec: int = 30
    a2e_max_processing_sec: int = 1800

    did_api_key: str = ""
    did_base_url: str = "https://api.d-id.com"
    did_min_poll_delay_sec: int = 10
    did_max_processing_sec: int = 600

    provider_http_timeout_sec: int = 30
    artifact_download_timeout_sec: int = 60

    reconcile_interval_sec: int = 30
    reconcile_lease_sec: int = 120
    reconciler_autostart: bool = False
    still_running_log_interval_sec: int = 300
    max_retries: int = 3
    reservation_expiry_hours: int = 1

    chars_per_minute: int = 150
    credits_per_minute_text: int = 10
    credits_per_minute_avatar: int = 20
    max_script_chars: int = 2000

    admin_api_token: str = ""
    auth_secret: str = "videogen-dev-secret"
    auth_token_ttl_sec: int = 86400


settings = Settings()
