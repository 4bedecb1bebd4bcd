"""Configuration module for Secure Key Vault.

This module loads all deployment configuration for the key custody service.

Config discovery:
-----------------
The config file is discovered in the following order: (1) via the
`SECURE_KEY_VAULT_CONFIG_PATH` environment variable, (2) `.skv` in the project
root, (3) `.env` in the project root, (4) environment variables only. The last
option keeps containerized deployments and CI simple.

Secrets:
--------
JWT signing keys and database URLs are never hardcoded. Validators reject
empty or placeholder values at startup.

Relying party:
--------------
The WebAuthn relying party (id, name, origin), ceremony timeout and challenge
TTL are read here once and handed to the ceremony engine as an immutable
`CeremonyConfig`. Nothing below the service layer reads `settings` for them.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class, and document them.
- If you change the config discovery logic, update this docstring.
"""

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
SKV_FILENAME: str = ".skv"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "SECURE_KEY_VAULT_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable SECURE_KEY_VAULT_CONFIG_PATH
    2. .skv in project root
    3. .env in project root
    4. None (environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    skv_path: Path = PROJECT_ROOT / SKV_FILENAME
    if skv_path.exists():
        return str(skv_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


@dataclass(frozen=True)
class CeremonyConfig:
    """Relying party and ceremony parameters passed to the ceremony engine."""

    rp_id: str
    rp_name: str
    origin: str
    timeout_ms: int = 60000
    challenge_ttl_seconds: int = 300
    attestation: str = "direct"
    authenticator_attachment: Optional[str] = "cross-platform"
    user_verification: str = "preferred"
    supported_algorithms: Tuple[int, ...] = (-7, -257)
    allowed_transports: Tuple[str, ...] = ("usb", "nfc", "ble")
    serial_prefix: str = "FT-"
    serial_max_attempts: int = 3


class Settings(BaseSettings):
    """Application settings with environment variable support.
    All fields are loaded from the environment or the .skv/.env file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
        validate_default=True,
    )

    # Server configuration
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = True
    APP_NAME: str = "Secure_Key_Vault"
    ENV: str = "dev"

    # JWT configuration
    SECRET_KEY: SecretStr = SecretStr("")  # Must be set in .skv or environment
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 24 * 60

    # MongoDB configuration
    MONGODB_URL: str = ""  # Must be set in .skv or environment
    MONGODB_DATABASE: str = "secure_key_vault"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Redis configuration
    # REDIS_URL is the effective URL used by the app. It can be provided directly
    # or will be constructed from host/port/credentials below.
    REDIS_URL: Optional[str] = None
    REDIS_HOST: str = "127.0.0.1"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_USERNAME: Optional[str] = None
    REDIS_PASSWORD: Optional[SecretStr] = None

    # WebAuthn relying party
    WEBAUTHN_RP_ID: str = "localhost"
    WEBAUTHN_RP_NAME: str = "SecureVault Pro"
    WEBAUTHN_ORIGIN: str = "http://localhost:3000"
    WEBAUTHN_TIMEOUT_MS: int = 60000
    WEBAUTHN_CHALLENGE_TTL_SECONDS: int = 300
    WEBAUTHN_ATTESTATION: str = "direct"
    WEBAUTHN_AUTHENTICATOR_ATTACHMENT: Optional[str] = "cross-platform"
    WEBAUTHN_USER_VERIFICATION: str = "preferred"
    KEY_SERIAL_PREFIX: str = "FT-"

    # Background maintenance
    CHALLENGE_SWEEP_INTERVAL_SECONDS: int = 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE_ENABLED: bool = True
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    # Collection names
    CREDENTIALS_COLLECTION: str = "security_keys"
    ASSIGNMENTS_COLLECTION: str = "key_assignments"
    AUDIT_LOG_COLLECTION: str = "audit_logs"
    USERS_COLLECTION: str = "users"

    @field_validator("SECRET_KEY", mode="before")
    @classmethod
    def no_hardcoded_secrets(cls, v, info):
        if not v or "change" in str(v).lower() or "0000" in str(v) or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or .skv and not hardcoded!")
        return v

    @field_validator("MONGODB_URL", "WEBAUTHN_RP_ID", "WEBAUTHN_ORIGIN", mode="before")
    @classmethod
    def no_empty_urls(cls, v, info):
        if not v or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or .skv and not empty!")
        return v

    @field_validator("WEBAUTHN_CHALLENGE_TTL_SECONDS", "WEBAUTHN_TIMEOUT_MS", "CHALLENGE_SWEEP_INTERVAL_SECONDS", mode="before")
    @classmethod
    def validate_positive_integers(cls, v, info):
        """Validate that ceremony timings are positive."""
        value = int(v)
        if value <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return value

    @field_validator("WEBAUTHN_ATTESTATION", mode="before")
    @classmethod
    def validate_attestation(cls, v):
        if v not in ("none", "indirect", "direct", "enterprise"):
            raise ValueError("WEBAUTHN_ATTESTATION must be one of none, indirect, direct, enterprise")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return not self.DEBUG

    def ceremony_config(self) -> CeremonyConfig:
        """Build the immutable relying party configuration for the ceremony engine."""
        return CeremonyConfig(
            rp_id=self.WEBAUTHN_RP_ID,
            rp_name=self.WEBAUTHN_RP_NAME,
            origin=self.WEBAUTHN_ORIGIN,
            timeout_ms=self.WEBAUTHN_TIMEOUT_MS,
            challenge_ttl_seconds=self.WEBAUTHN_CHALLENGE_TTL_SECONDS,
            attestation=self.WEBAUTHN_ATTESTATION,
            authenticator_attachment=self.WEBAUTHN_AUTHENTICATOR_ATTACHMENT or None,
            user_verification=self.WEBAUTHN_USER_VERIFICATION,
            serial_prefix=self.KEY_SERIAL_PREFIX,
        )


# Global settings instance
settings: Settings = Settings()

# Compute effective REDIS_URL if not explicitly provided.
if not settings.REDIS_URL:
    creds = ""
    if settings.REDIS_USERNAME or settings.REDIS_PASSWORD:
        username = settings.REDIS_USERNAME or ""
        password = settings.REDIS_PASSWORD.get_secret_value() if settings.REDIS_PASSWORD else ""
        if username and password:
            creds = f"{username}:{password}@"
        elif password and not username:
            creds = f":{password}@"

    settings.REDIS_URL = f"redis://{creds}{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
