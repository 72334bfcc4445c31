from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str
    supabase_service_role_key: str
    database_url: str | None = None
    default_phone_country: str = "IT"
    rate_limit_retry_after_seconds: int = 60
    default_replay_window_seconds: int = 300
    sheets_export_url: str | None = None
    sheets_export_trigger_timeout_seconds: float = 5.0
    sheets_internal_token: str | None = None
    google_sheets_enabled: bool = False
    google_service_account_key: str | None = None  # raw JSON or base64
    google_sheets_file_id: str | None = None
    google_oauth_timeout_seconds: float = 10.0
    google_sheets_timeout_seconds: float = 15.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
