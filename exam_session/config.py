"""
Settings for the exam session engine.
Values come from the environment (.env is loaded for local development).
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_STORE_PATH = Path.home() / ".exam_session" / "store.json"
DEFAULT_FALLBACK_POOL = Path(__file__).resolve().parent / "data" / "fallback_questions.json"


@dataclass
class Settings:
    supabase_url: str | None = None
    supabase_key: str | None = None
    results_table: str = "test_results"
    store_path: Path = DEFAULT_STORE_PATH
    fallback_pool: Path = DEFAULT_FALLBACK_POOL
    fetch_timeout: float = 15.0
    fetch_retries: int = 2
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_key=os.getenv("SUPABASE_KEY"),
            results_table=os.getenv("EXAM_RESULTS_TABLE", "test_results"),
            store_path=Path(os.getenv("EXAM_STORE_PATH") or DEFAULT_STORE_PATH),
            fallback_pool=Path(os.getenv("EXAM_FALLBACK_POOL") or DEFAULT_FALLBACK_POOL),
            fetch_timeout=float(os.getenv("QUESTION_FETCH_TIMEOUT", "15")),
            fetch_retries=int(os.getenv("QUESTION_FETCH_RETRIES", "2")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), format="%(levelname)s: %(message)s")
