from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "tusvault"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: str = "sqlite:///./tusvault.db"
    public_base_url: str = ""
    storage_backend: str = "local"
    storage_root: str = "./data/blobs"
    staging_dir: str = "./data/tus_uploads"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    auth_mode: str = "api_key"
    api_key_mappings: str = "dev-key:dev-user"
    admin_user_ids: str = "dev-user"
    api_rate_limit_per_minute: int = 0
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""
    jwt_issuer: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "tusvault"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    max_upload_size_bytes: int = 4 * 1024 * 1024 * 1024
    finalize_worker_count: int = 4
    finalize_queue_maxsize: int = 256
    finalize_max_retries: int = 3
    recovery_sweep_enabled: bool = True
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stream_block_size: int = 64 * 1024


settings = Settings()
