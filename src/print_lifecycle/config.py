from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./print_lifecycle.db"

    # Staging (local disk, pre-payment)
    staging_dir: str = "./uploads"
    max_upload_mb: int = 50
    allowed_extensions: list[str] = ["pdf", "doc", "docx"]
    staging_retention_hours: int = 24

    # Pricing (per printed page)
    black_rate: float = 1.0
    color_rate: float = 5.0
    currency: str = "INR"

    # Payment processor
    payment_api_base: str = "https://api.razorpay.com/v1"
    payment_key_id: str = ""
    payment_key_secret: str = ""

    # Durable storage: "local" or "s3"
    durable_backend: str = "local"
    durable_path: str = "./storage"
    durable_folder: str = "print-requests"
    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""

    # Print queue
    max_concurrent_jobs: int = 3
    retry_attempts: int = 3
    retry_delay_seconds: float = 5.0
    job_timeout_seconds: float = 120.0

    # Maintenance
    sweep_interval_seconds: float = 3600.0
    migration_retry_limit: int = 3

    # Email notification (Gmail App Password, not the account password)
    smtp_from_email: str = ""
    smtp_app_password: str = ""
    staff_email: str = ""

    # SMS notification (Twilio-compatible REST API)
    sms_account_sid: str = ""
    sms_auth_token: str = ""
    sms_from_number: str = ""

    log_level: str = "INFO"

    model_config = {"env_file": ".env"}


settings = Settings()
