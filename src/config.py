from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict


class SignatureMode(str, Enum):
    ENFORCE = "enforce"
    WARN_AND_ALLOW = "warn_and_allow"


class Settings(BaseSettings):
    gcp_project_id: str | None = None
    firestore_database: str = "(default)"
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    sendgrid_api_key: str | None = None
    sendgrid_webhook_verification_key: str | None = None
    engagement_commit_max_operations: int = 500
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @property
    def signature_mode(self) -> SignatureMode:
        if self.sendgrid_webhook_verification_key:
            return SignatureMode.ENFORCE
        return SignatureMode.WARN_AND_ALLOW

    @property
    def mailer_configured(self) -> bool:
        return bool(self.sendgrid_api_key)


settings = Settings()
