from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


def _split_models(raw: str) -> tuple[str, ...]:
    return tuple(m.strip() for m in raw.split(",") if m.strip())


@dataclass(frozen=True)
class Settings:
    # Default DB path used by the CLI.
    db_path: str = os.getenv("ACTORGRAPH_DB_PATH", "./data/actorgraph.db")

    # Ollama; models are tried in the listed order.
    ollama_base_url: str = os.getenv("ACTORGRAPH_OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_models: tuple[str, ...] = _split_models(os.getenv("ACTORGRAPH_OLLAMA_MODELS", "mistral,aya:8b,llama3.2"))
    ollama_temperature: float = float(os.getenv("ACTORGRAPH_OLLAMA_TEMPERATURE", "0.1"))
    ollama_timeout_s: float = float(os.getenv("ACTORGRAPH_OLLAMA_TIMEOUT", "120"))

    # Extraction queue
    poll_interval_s: float = float(os.getenv("ACTORGRAPH_POLL_INTERVAL", "10"))
    max_attempts: int = int(os.getenv("ACTORGRAPH_MAX_ATTEMPTS", "3"))
    extract_timeout_s: float = float(os.getenv("ACTORGRAPH_EXTRACT_TIMEOUT", "180"))

    log_level: str = os.getenv("ACTORGRAPH_LOG_LEVEL", "INFO")
