import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class Settings:
    database_url: str = "sqlite:///./orders.db"
    frontend_url: str = "http://localhost:5173"
    log_level: str = "INFO"
    offer_window_seconds: float = 5.0
    rabbitmq_host: Optional[str] = None
    rabbitmq_exchange: str = "events"
    rabbitmq_connect_attempts: int = 5

    @property
    def messaging_enabled(self) -> bool:
        return bool(self.rabbitmq_host)


def _positive_float(value: Optional[str], default: float, name: str) -> float:
    if value is None or value.strip() == "":
        return default
    number = float(value)
    if number <= 0:
        raise ValueError(f"{name} must be > 0")
    return number


def load_settings() -> Settings:
    """Build settings from the environment (and a local .env file)."""
    load_dotenv()
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./orders.db"),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        offer_window_seconds=_positive_float(os.getenv("OFFER_WINDOW_SECONDS"), 5.0, "OFFER_WINDOW_SECONDS"),
        rabbitmq_host=os.getenv("RABBITMQ_HOST") or None,
        rabbitmq_exchange=os.getenv("RABBITMQ_EXCHANGE", "events"),
        rabbitmq_connect_attempts=int(os.getenv("RABBITMQ_CONNECT_ATTEMPTS", "5")),
    )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(getattr(h, "_order_service", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._order_service = True
        root.addHandler(handler)
    root.setLevel(level)
