# paydesk/config.py
# ============================================================================
# PAYDESK — CONFIGURATION
# ============================================================================
# Environment-driven settings. Presence of sink credentials gates whether the
# archival and notification sinks are attempted at all.
# ============================================================================

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass
class StoreProfile:
    """Display fields printed on the invoice header."""
    name: str = "Your Store"
    email: str = ""
    phone: str = ""
    address: str = ""


@dataclass
class Settings:
    # Razorpay
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_webhook_secret: Optional[str] = None
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    currency: str = "INR"

    # Archival sinks
    archive_backend: Optional[str] = None
    google_credentials_json: Optional[str] = None
    google_credentials_file: Optional[str] = None
    google_drive_folder_id: Optional[str] = None
    github_token: Optional[str] = None
    github_owner: Optional[str] = None
    github_repo: Optional[str] = None
    github_branch: str = "main"
    github_invoice_dir: str = "invoices"
    s3_bucket: Optional[str] = None
    s3_prefix: str = "invoices/"
    aws_region: str = "ap-south-1"

    # Notification sinks
    mail_backend: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    smtp_secure: bool = False
    sendgrid_api_key: Optional[str] = None
    mail_from: Optional[str] = None
    mail_bcc: Optional[str] = None
    notify_in_background: bool = False

    # Sink bounds
    sink_timeout_seconds: float = 15.0
    sink_max_attempts: int = 3
    sink_retry_backoff_seconds: float = 0.5

    # Storage / process
    store: StoreProfile = field(default_factory=StoreProfile)
    data_dir: str = "."
    invoice_tmp_dir: Optional[str] = None
    invoice_font_path: Optional[str] = None
    port: int = 3000
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "Settings":
        if load_dotenv_file:
            load_dotenv()
        return cls(
            razorpay_key_id=_env_optional("RAZORPAY_KEY_ID"),
            razorpay_key_secret=_env_optional("RAZORPAY_KEY_SECRET"),
            razorpay_webhook_secret=_env_optional("RAZORPAY_WEBHOOK_SECRET"),
            razorpay_api_url=os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1"),
            currency=os.getenv("CURRENCY", "INR"),
            archive_backend=_env_optional("ARCHIVE_BACKEND"),
            google_credentials_json=_env_optional("GOOGLE_APPLICATION_CREDENTIALS_JSON"),
            google_credentials_file=_env_optional("GOOGLE_APPLICATION_CREDENTIALS"),
            google_drive_folder_id=_env_optional("GOOGLE_DRIVE_FOLDER_ID"),
            github_token=_env_optional("GITHUB_TOKEN"),
            github_owner=_env_optional("GITHUB_OWNER"),
            github_repo=_env_optional("GITHUB_REPO"),
            github_branch=os.getenv("GITHUB_BRANCH", "main"),
            github_invoice_dir=os.getenv("GITHUB_INVOICE_DIR", "invoices"),
            s3_bucket=_env_optional("S3_BUCKET"),
            s3_prefix=os.getenv("S3_PREFIX", "invoices/"),
            aws_region=os.getenv("AWS_REGION", "ap-south-1"),
            mail_backend=_env_optional("MAIL_BACKEND"),
            smtp_host=_env_optional("SMTP_HOST"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=_env_optional("SMTP_USER"),
            smtp_pass=_env_optional("SMTP_PASS"),
            smtp_secure=_env_bool("SMTP_SECURE"),
            sendgrid_api_key=_env_optional("SENDGRID_API_KEY"),
            mail_from=_env_optional("MAIL_FROM"),
            mail_bcc=_env_optional("MAIL_BCC"),
            notify_in_background=_env_bool("NOTIFY_IN_BACKGROUND"),
            sink_timeout_seconds=float(os.getenv("SINK_TIMEOUT_SECONDS", "15")),
            sink_max_attempts=int(os.getenv("SINK_MAX_ATTEMPTS", "3")),
            sink_retry_backoff_seconds=float(os.getenv("SINK_RETRY_BACKOFF_SECONDS", "0.5")),
            store=StoreProfile(
                name=os.getenv("STORE_NAME", "Your Store"),
                email=os.getenv("STORE_EMAIL", ""),
                phone=os.getenv("STORE_PHONE", ""),
                address=os.getenv("STORE_ADDRESS", ""),
            ),
            data_dir=os.getenv("DATA_DIR", "."),
            invoice_tmp_dir=_env_optional("INVOICE_TMP_DIR"),
            invoice_font_path=_env_optional("INVOICE_FONT_PATH"),
            port=int(os.getenv("PORT", "3000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )

    # ------------------------------------------------------------------
    # Sink gating
    # ------------------------------------------------------------------

    @property
    def drive_configured(self) -> bool:
        has_creds = bool(self.google_credentials_json or self.google_credentials_file)
        return has_creds and bool(self.google_drive_folder_id)

    @property
    def github_configured(self) -> bool:
        return bool(self.github_token and self.github_owner and self.github_repo)

    @property
    def s3_configured(self) -> bool:
        return bool(self.s3_bucket)

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.mail_from)

    @property
    def sendgrid_configured(self) -> bool:
        return bool(self.sendgrid_api_key and self.mail_from)

    def resolve_archive_backend(self) -> Optional[str]:
        """Explicit ARCHIVE_BACKEND wins; otherwise the first configured sink."""
        available = {
            "drive": self.drive_configured,
            "github": self.github_configured,
            "s3": self.s3_configured,
        }
        if self.archive_backend:
            choice = self.archive_backend.lower()
            if choice == "none":
                return None
            return choice if available.get(choice) else None
        for name, ok in available.items():
            if ok:
                return name
        return None

    def resolve_mail_backend(self) -> Optional[str]:
        available = {
            "smtp": self.smtp_configured,
            "sendgrid": self.sendgrid_configured,
        }
        if self.mail_backend:
            choice = self.mail_backend.lower()
            if choice == "none":
                return None
            return choice if available.get(choice) else None
        for name, ok in available.items():
            if ok:
                return name
        return None

    @property
    def orders_file(self) -> str:
        return os.path.join(self.data_dir, "orders_store.jsonl")

    @property
    def verified_file(self) -> str:
        return os.path.join(self.data_dir, "payments_verified.txt")
