"""
Runtime configuration, read from the environment (and a local ``.env``).
"""
import logging
import os
from typing import FrozenSet, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _env_set(name: str) -> Optional[FrozenSet[str]]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return frozenset(v.strip() for v in raw.split(",") if v.strip())


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    firebase_service_account_hex: Optional[str] = None
    port: int = 3000
    log_level: str = "INFO"
    # None keeps the owner PATCH open to any target status
    loan_owner_status_targets: Optional[FrozenSet[str]] = None
    strict_role_gates: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            firebase_service_account_hex=os.getenv("FIREBASE_SERVICE_ACCOUNT_HEX"),
            port=int(os.getenv("PORT", 3000)),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            loan_owner_status_targets=_env_set("LOAN_OWNER_STATUS_TARGETS"),
            strict_role_gates=_env_flag("STRICT_ROLE_GATES"),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # pymongo's heartbeat chatter drowns request logs at DEBUG
    logging.getLogger("pymongo").setLevel(logging.WARNING)
