from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "resumable-upload-service"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 3000
    database_url: str = "sqlite:///./resumable_uploads.db"
    storage_root: str = "./uploads"
    tracker_max_entries: int = 10_000
    tracing_enabled: bool = False
    tracing_service_name: str = "resumable-upload-service"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_upload_ttl_seconds: int = 86400

    # client driver defaults
    chunk_size_bytes: int = 5 * 1024 * 1024
    max_retries: int = 3
    max_rejection_retries: int = 5
    retry_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    client_timeout_seconds: float = 60.0


settings = Settings()
