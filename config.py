from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from rules import RuleConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")

    # =========================
    # Audit log store (Redis or in-process)
    # =========================
    REDIS_URL: str = "redis://localhost:6379/0"
    AUDIT_BACKEND: str = "redis"  # redis | memory
    AUDIT_LOG_TTL_SECONDS: int = 24 * 60 * 60
    AUDIT_LOG_PREFIX: str = "log:"
    AUDIT_STORE_TIMEOUT: float = 2.0
    DASHBOARD_LOG_LIMIT: int = 100

    # =========================
    # Rule set
    # =========================
    BLOCKED_COUNTRIES: List[str] = ["CN", "RU", "KP", "IR"]
    PROTECTED_PATH: str = "/api"
    BOT_SIGNATURES: List[str] = [
        "bot", "crawler", "spider", "scraper", "curl", "wget", "python-requests",
    ]
    ALLOWED_METHODS: List[str] = ["GET", "HEAD", "OPTIONS"]
    BLOCKED_PATH_PREFIXES: List[str] = ["/admin", "/.env", "/wp-admin"]
    INJECTION_KEYWORDS: List[str] = ["SELECT", "UNION", "DROP", "INSERT", "--", ";"]

    # =========================
    # Edge headers
    # =========================
    CLIENT_IP_HEADER: str = "CF-Connecting-IP"
    COUNTRY_HEADER: str = "CF-IPCountry"

    # =========================
    # Policy source (Cloudflare Gateway rules, display only)
    # =========================
    POLICY_API_BASE_URL: str = "https://api.cloudflare.com/client/v4"
    CLOUDFLARE_ACCOUNT_ID: Optional[str] = None
    CLOUDFLARE_API_TOKEN: Optional[str] = None
    POLICY_REFRESH_TIMEOUT: float = 5.0

    # =========================
    # Upstream (allowed traffic)
    # =========================
    UPSTREAM_BASE_URL: Optional[str] = None

    def rule_config(self) -> RuleConfig:
        return RuleConfig(
            blocked_countries=self.BLOCKED_COUNTRIES,
            protected_path=self.PROTECTED_PATH,
            bot_signatures=self.BOT_SIGNATURES,
            allowed_methods=self.ALLOWED_METHODS,
            blocked_path_prefixes=self.BLOCKED_PATH_PREFIXES,
            injection_keywords=self.INJECTION_KEYWORDS,
        )


# Singleton
settings = Settings()
