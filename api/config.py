"""
Application settings — read once from the environment (and .env).
"""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "pharmachain_development_secret"
DEFAULT_JWT_REFRESH_SECRET = "pharmachain_refresh_secret"
LOCAL_LEDGER = "local"
DEFAULT_ADMIN_ADDRESS = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"


class ConfigError(RuntimeError):
    """Configuration that must not be allowed to start."""


@dataclass
class Settings:
    app_env: str = "development"
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_refresh_secret: str = DEFAULT_JWT_REFRESH_SECRET
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 24 * 60
    refresh_token_expire_days: int = 7
    ledger_rpc_url: str = LOCAL_LEDGER
    ledger_signing_key: str = "pharmachain_ledger_key"
    ledger_admin_address: Optional[str] = None
    ledger_timeout_seconds: float = 30.0
    ledger_read_retries: int = 2
    gas_limit: int = 500_000
    gas_price: int = 20_000_000_000  # 20 gwei
    revocation_db_url: Optional[str] = None
    profile_cache_ttl_seconds: int = 3600
    cache_purge_interval_seconds: int = 600
    ipfs_api_url: Optional[str] = None
    ipfs_gateway_url: str = "https://ipfs.io/ipfs/"
    frontend_url: str = "https://pharmachain.io"
    qr_max_age_days: int = 365
    allowed_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def uses_local_ledger(self) -> bool:
        return self.ledger_rpc_url == LOCAL_LEDGER

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            if raw in (None, ""):
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigError(f"{name} must be an integer, got {raw!r}")

        origins = env.get("ALLOWED_ORIGINS")
        settings = cls(
            app_env=env.get("APP_ENV", "development"),
            jwt_secret=env.get("JWT_SECRET", DEFAULT_JWT_SECRET),
            jwt_refresh_secret=env.get("JWT_REFRESH_SECRET", DEFAULT_JWT_REFRESH_SECRET),
            jwt_algorithm=env.get("JWT_ALGORITHM", "HS256"),
            access_token_expire_minutes=_int("ACCESS_TOKEN_EXPIRE_MINUTES", 24 * 60),
            refresh_token_expire_days=_int("REFRESH_TOKEN_EXPIRE_DAYS", 7),
            ledger_rpc_url=env.get("LEDGER_RPC_URL", LOCAL_LEDGER),
            ledger_signing_key=env.get("LEDGER_SIGNING_KEY", "pharmachain_ledger_key"),
            ledger_admin_address=env.get("LEDGER_ADMIN_ADDRESS") or None,
            ledger_timeout_seconds=float(env.get("LEDGER_TIMEOUT_SECONDS", 30)),
            ledger_read_retries=_int("LEDGER_READ_RETRIES", 2),
            gas_limit=_int("GAS_LIMIT", 500_000),
            gas_price=_int("GAS_PRICE", 20_000_000_000),
            revocation_db_url=(env.get("REVOCATION_DB_URL") or "").replace("postgres://", "postgresql://") or None,
            profile_cache_ttl_seconds=_int("PROFILE_CACHE_TTL_SECONDS", 3600),
            cache_purge_interval_seconds=_int("CACHE_PURGE_INTERVAL_SECONDS", 600),
            ipfs_api_url=env.get("IPFS_API_URL") or None,
            ipfs_gateway_url=env.get("IPFS_GATEWAY_URL", "https://ipfs.io/ipfs/"),
            frontend_url=env.get("FRONTEND_URL", "https://pharmachain.io"),
            qr_max_age_days=_int("QR_MAX_AGE_DAYS", 365),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()] if origins
            else ["http://localhost:3000"],
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ConfigError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.is_production:
            if self.jwt_secret == DEFAULT_JWT_SECRET or self.jwt_refresh_secret == DEFAULT_JWT_REFRESH_SECRET:
                raise ConfigError("JWT_SECRET and JWT_REFRESH_SECRET must be set in production")
            if self.uses_local_ledger:
                raise ConfigError("LEDGER_RPC_URL must point at a ledger node in production")
        elif self.jwt_secret == DEFAULT_JWT_SECRET:
            logger.warning("Using default JWT secret. Set JWT_SECRET in production!")
