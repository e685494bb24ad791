import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        currency_symbol: str,
        gemini_api_key: Optional[str],
        gemini_model: str,
        smtp_host: str,
        smtp_port: int,
        smtp_user: Optional[str],
        smtp_password: Optional[str],
        email_sender: Optional[str],
        twilio_account_sid: Optional[str],
        twilio_auth_token: Optional[str],
        twilio_whatsapp_number: Optional[str],
        recurring_throttle_limit: int,
        recurring_throttle_period_secs: int,
        budget_alert_threshold: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.currency_symbol = currency_symbol
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.email_sender = email_sender
        self.twilio_account_sid = twilio_account_sid
        self.twilio_auth_token = twilio_auth_token
        self.twilio_whatsapp_number = twilio_whatsapp_number
        self.recurring_throttle_limit = recurring_throttle_limit
        self.recurring_throttle_period_secs = recurring_throttle_period_secs
        self.budget_alert_threshold = budget_alert_threshold


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINWISE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finwise.db"
    database_url = os.getenv("FINWISE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINWISE_TIMEZONE", "Asia/Kolkata")
    currency_symbol = os.getenv("FINWISE_CURRENCY_SYMBOL", "₹")
    gemini_api_key = os.getenv("FINWISE_GEMINI_API_KEY") or None
    gemini_model = os.getenv("FINWISE_GEMINI_MODEL", "gemini-2.0-flash")
    smtp_host = os.getenv("FINWISE_SMTP_HOST", "smtp.gmail.com")
    smtp_port = int(os.getenv("FINWISE_SMTP_PORT", "587"))
    smtp_user = os.getenv("FINWISE_SMTP_USER") or None
    smtp_password = os.getenv("FINWISE_SMTP_PASSWORD") or None
    email_sender = os.getenv("FINWISE_EMAIL_SENDER") or smtp_user
    twilio_account_sid = os.getenv("FINWISE_TWILIO_ACCOUNT_SID") or None
    twilio_auth_token = os.getenv("FINWISE_TWILIO_AUTH_TOKEN") or None
    twilio_whatsapp_number = os.getenv("FINWISE_TWILIO_WHATSAPP_NUMBER") or None
    recurring_throttle_limit = int(os.getenv("FINWISE_RECURRING_THROTTLE_LIMIT", "10"))
    recurring_throttle_period_secs = int(
        os.getenv("FINWISE_RECURRING_THROTTLE_PERIOD_SECS", "60")
    )
    budget_alert_threshold = float(os.getenv("FINWISE_BUDGET_ALERT_THRESHOLD", "80"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        currency_symbol=currency_symbol,
        gemini_api_key=gemini_api_key,
        gemini_model=gemini_model,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_user=smtp_user,
        smtp_password=smtp_password,
        email_sender=email_sender,
        twilio_account_sid=twilio_account_sid,
        twilio_auth_token=twilio_auth_token,
        twilio_whatsapp_number=twilio_whatsapp_number,
        recurring_throttle_limit=recurring_throttle_limit,
        recurring_throttle_period_secs=recurring_throttle_period_secs,
        budget_alert_threshold=budget_alert_threshold,
    )
