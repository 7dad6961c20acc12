# renoveasy_auth/core/config.py
import os
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict
from typing import Optional, List, Tuple
from functools import lru_cache

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra='ignore')

    # Application Settings
    APP_NAME: str = "RenovEasy Auth API"
    APP_VERSION: str = "1.0.0"
    ENV: str = os.environ.get("ENV", "development")
    DEBUG: bool = False
    DOCS_ENABLED: bool = True

    # Database Settings
    DATABASE_URL: str = os.environ.get("DATABASE_URL", "sqlite:///./renoveasy_auth.db")
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_TIMEOUT_SECONDS: float = 2.0

    # Redis Settings
    REDIS_URL: Optional[str] = os.environ.get("REDIS_URL", None)
    REDIS_MAX_CONNECTIONS: int = 20
    CACHE_TIMEOUT_MS: int = 250

    # JWT Settings (RS256)
    JWT_ALGORITHM: str = "RS256"
    JWT_ISSUER: str = "renov-easy"
    JWT_AUDIENCE: str = "renov-easy-api"
    JWT_PRIVATE_KEY: str = os.environ.get("JWT_PRIVATE_KEY", "").replace('\\n', '\n')
    JWT_PUBLIC_KEY: str = os.environ.get("JWT_PUBLIC_KEY", "").replace('\\n', '\n')
    JWT_PRIVATE_KEY_PATH: Optional[str] = None
    JWT_PUBLIC_KEY_PATH: Optional[str] = None
    ACCESS_TOKEN_EXPIRY_SECONDS: int = 900
    REFRESH_TOKEN_EXPIRY_SECONDS: int = 2_592_000

    # OTP Settings
    OTP_EXPIRATION_MINUTES: int = 10
    OTP_MAX_ATTEMPTS: int = 5
    RESEND_COOLDOWN_SECONDS: int = 60
    ENFORCE_RESEND_COOLDOWN: bool = False
    # "version:base64key" pairs, comma separated; highest version encrypts
    OTP_ENCRYPTION_KEYS: str = os.environ.get("OTP_ENCRYPTION_KEYS", "")
    OTP_KEY_RETIREMENT_SECONDS: int = 900
    OTP_FALLBACK_POLICY: str = "mirror"  # mirror | failover

    # Circuit breaker for the Redis OTP store
    CACHE_BREAKER_FAILURES: int = 3
    CACHE_BREAKER_WINDOW_SECONDS: float = 10.0
    CACHE_BREAKER_COOLDOWN_SECONDS: float = 30.0

    # Rate Limiting
    RATE_LIMIT_WINDOW_SECONDS: int = 3600
    RATE_LIMIT_MAX_REQUESTS: int = 5
    IP_RATE_LIMIT_WINDOW_SECONDS: int = 3600
    IP_RATE_LIMIT_MAX_REQUESTS: int = 30

    # Account lock: (consecutive failures, lock seconds)
    ACCOUNT_LOCK_THRESHOLDS: List[Tuple[int, int]] = [(5, 900), (10, 3600), (20, 86400)]
    ACCOUNT_LOCK_STATE_TTL_SECONDS: int = 86400

    # Attack detection
    ATTACK_STUFFING_PHONES: int = 5
    ATTACK_STUFFING_WINDOW_SECONDS: int = 600
    ATTACK_BRUTE_FAILURES: int = 10
    ATTACK_BRUTE_WINDOW_SECONDS: int = 600
    ATTACK_DISTRIBUTED_FAILURES: int = 5
    ATTACK_DISTRIBUTED_IPS: int = 3
    ATTACK_DISTRIBUTED_WINDOW_SECONDS: int = 600
    ATTACK_ENUMERATION_PHONES: int = 10
    ATTACK_ENUMERATION_WINDOW_SECONDS: int = 300
    ATTACK_SLOW_PENALTY_MS: int = 1000

    # Response shaping
    DELAY_BASE_MS: int = 250
    DELAY_VARIANCE_MS: int = 150

    # SMS Settings
    SMS_PROVIDER: str = "mock"  # mock | twilio | aws-sns
    SMS_BACKUP_PROVIDER: Optional[str] = None
    SMS_FAILOVER_RETRY_SECONDS: int = 30
    SMS_TIMEOUT_SECONDS: int = 10
    TWILIO_ACCOUNT_SID: str = os.environ.get("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN: str = os.environ.get("TWILIO_AUTH_TOKEN", "")
    TWILIO_PHONE_NUMBER: str = os.environ.get("TWILIO_PHONE_NUMBER", "")
    AWS_REGION: str = os.environ.get("AWS_REGION", "ap-southeast-2")
    AWS_ACCESS_KEY_ID: str = os.environ.get("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.environ.get("AWS_SECRET_ACCESS_KEY", "")
    AWS_SNS_SENDER_ID: str = "RenovEasy"

    # Registration
    ALLOW_REGISTRATION: bool = True
    REQUIRE_IMMEDIATE_USER_TYPE: bool = False

    # Audit
    AUDIT_BACKEND: str = "sql"  # sql | log | noop

    # Token cleanup
    CLEANUP_ENABLED: bool = True
    CLEANUP_INTERVAL_SECONDS: int = 600
    CLEANUP_GRACE_SECONDS: int = 7 * 86400
    CLEANUP_BATCH_SIZE: int = 1000
    CLEANUP_LEASE_SECONDS: int = 300

    # Logging Settings
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # CORS Settings
    ALLOWED_ORIGINS: str = os.environ.get("ALLOWED_ORIGINS", "*")

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"

    # Helper methods for list envs
    def _split_csv(self, value: str) -> List[str]:
        if value is None:
            return []
        value = value.strip()
        if value == "":
            return []
        return [item.strip() for item in value.split(",")]

    @property
    def allowed_origins_list(self) -> List[str]:
        return self._split_csv(self.ALLOWED_ORIGINS)

    @property
    def otp_encryption_keys_list(self) -> List[str]:
        return self._split_csv(self.OTP_ENCRYPTION_KEYS)

@lru_cache()
def get_settings() -> Settings:
    return Settings()
