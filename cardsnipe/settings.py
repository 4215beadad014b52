import logging
import os
import tomllib
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

CARDSNIPE_ROOT = Path(os.getenv("CARDSNIPE_ROOT", str(Path.cwd())))

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s -- %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class SchedulerCfg(BaseModel):
    grace_seconds: float = 2.0
    max_concurrent_bids: int = Field(default=8, ge=1)
    default_snipe_seconds: int = Field(default=30, gt=0)


class ExecutorCfg(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 4.0
    call_timeout_seconds: float = 10.0
    min_remaining_seconds: float = 0.5


class SweeperCfg(BaseModel):
    interval_seconds: int = 60
    stuck_processing_seconds: int = 300


class CredentialsCfg(BaseModel):
    provider: str = "ebay"
    token_url: str = "https://api.ebay.com/identity/v1/oauth2/token"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scopes: List[str] = Field(
        default_factory=lambda: ["https://api.ebay.com/oauth/api_scope"]
    )
    refresh_margin_seconds: int = 300
    timeout_seconds: float = 10.0


class MarketplaceCfg(BaseModel):
    api_base_url: str = "https://api.ebay.com"
    marketplace_id: str = "EBAY_US"
    currency: str = "USD"
    timeout_seconds: float = 10.0


class DatabaseCfg(BaseModel):
    url: str = f"sqlite:///{CARDSNIPE_ROOT}/data/cardsnipe.sqlite"


class LoggingCfg(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "cardsnipe.log"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5


class Settings(BaseModel):
    scheduler: SchedulerCfg = SchedulerCfg()
    executor: ExecutorCfg = ExecutorCfg()
    sweeper: SweeperCfg = SweeperCfg()
    credentials: CredentialsCfg = CredentialsCfg()
    marketplace: MarketplaceCfg = MarketplaceCfg()
    database: DatabaseCfg = DatabaseCfg()
    logging: LoggingCfg = LoggingCfg()


def load_settings() -> Settings:
    cfg_path = Path(os.getenv("CARDSNIPE_CONFIG", "cardsnipe.toml"))
    raw = tomllib.loads(cfg_path.read_text()) if cfg_path.exists() else {}
    settings = Settings.model_validate(raw)

    # secrets come from the environment when present
    creds = settings.credentials
    creds.client_id = os.getenv("EBAY_CLIENT_ID", creds.client_id)
    creds.client_secret = os.getenv("EBAY_CLIENT_SECRET", creds.client_secret)
    if os.getenv("CARDSNIPE_DEBUG", "0") == "1":
        settings.logging.level = "DEBUG"
    return settings


def configure_logging(cfg: LoggingCfg) -> None:
    """Console + rotating file logging, set once by the entry points."""
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)

    root = logging.getLogger()
    root.setLevel(level)
    if cfg.file and not any(
        isinstance(h, RotatingFileHandler) for h in root.handlers
    ):
        file_handler = RotatingFileHandler(
            cfg.file,
            maxBytes=cfg.max_bytes,
            backupCount=cfg.backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root.addHandler(file_handler)
