"""DonorHub OTP service — configuration loaded from environment."""

from pydantic_settings import BaseSettings

# Well-known provider names accepted by ``EMAIL_SERVICE``
SMTP_PROVIDER_HOSTS = {
    "gmail": "smtp.gmail.com",
    "outlook": "smtp-mail.outlook.com",
    "hotmail": "smtp-mail.outlook.com",
    "yahoo": "smtp.mail.yahoo.com",
}


class Settings(BaseSettings):
    """Application-wide settings, loaded from .env or environment variables."""

    # ── Database ──────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./donorhub_otp.db"

    # ── OTP lifecycle ─────────────────────────────────────
    otp_validity_minutes: int = 10
    otp_max_verify_attempts: int = 5
    otp_hard_ttl_seconds: int = 600
    otp_sweep_interval_seconds: int = 60

    # ── Issuance rate limit ───────────────────────────────
    rate_limit_max_requests: int = 5
    rate_limit_window_minutes: int = 60

    # ── Email delivery (SMTP) ─────────────────────────────
    email_service: str = "gmail"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    email_from: str = ""
    email_send_timeout_seconds: float = 10.0

    # ── App ───────────────────────────────────────────────
    app_name: str = "DonorHub"
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def resolved_smtp_host(self) -> str:
        """Explicit ``SMTP_HOST`` wins; otherwise map the provider name."""
        if self.smtp_host:
            return self.smtp_host
        return SMTP_PROVIDER_HOSTS.get(self.email_service.lower(), self.email_service)

    @property
    def resolved_email_from(self) -> str:
        return self.email_from or f"{self.app_name} <{self.smtp_username}>"


# Singleton settings instance
settings = Settings()
