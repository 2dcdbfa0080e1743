from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
import os

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    project_root: Path
    data_dir: Path
    sessions_dir: Path
    rag_dir: Path
    rag_store_path: Path
    uploads_dir: Path
    learned_dir: Path
    hf_api_token: str
    hf_base_url: str
    hf_model: str
    hf_temperature: float
    hf_max_tokens: int
    openai_api_key: str
    openai_base_url: str
    openai_chat_model: str
    en_ratio_threshold: float
    min_reply_chars: int
    keep_chinese_only: bool
    rag_top_k: int
    direct_answer_score: float
    max_session_turns: int
    cwa_api_key: str
    cwa_base_url: str
    weather_timeout_seconds: float
    mcp_accounting_sse_url: str
    mcp_medical_sse_url: str
    mcp_reference_sse_url: str
    mcp_timeout_seconds: float
    primary_timeout_seconds: float
    escalation_timeout_seconds: float
    learning_enabled: bool


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def build_settings(project_root: Path, data_dir: Path | None = None) -> Settings:
    data_dir = data_dir or project_root / "data"
    rag_dir = data_dir / "rag"

    return Settings(
        project_root=project_root,
        data_dir=data_dir,
        sessions_dir=data_dir / "sessions",
        rag_dir=rag_dir,
        rag_store_path=rag_dir / "rag_store.json",
        uploads_dir=data_dir / "uploads",
        learned_dir=data_dir / "learned",
        hf_api_token=os.getenv("HF_API_TOKEN", "").strip(),
        hf_base_url=os.getenv("HF_BASE_URL", "https://router.huggingface.co/v1").strip(),
        hf_model=os.getenv("HF_MODEL", "meta-llama/Meta-Llama-3-8B-Instruct").strip(),
        hf_temperature=_env_float("HF_TEMPERATURE", 0.3),
        hf_max_tokens=_env_int("HF_MAX_TOKENS", 512),
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip(),
        openai_chat_model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini").strip(),
        en_ratio_threshold=_env_float("EN_RATIO_THRESHOLD", 0.18),
        min_reply_chars=_env_int("MIN_REPLY_CHARS", 4),
        keep_chinese_only=_env_bool("KEEP_CHINESE_ONLY", False),
        rag_top_k=_env_int("RAG_TOP_K", 4),
        direct_answer_score=_env_float("DIRECT_ANSWER_SCORE", 0.9),
        max_session_turns=_env_int("MAX_SESSION_TURNS", 80),
        cwa_api_key=os.getenv("CWA_API_KEY", "").strip(),
        cwa_base_url=os.getenv(
            "CWA_BASE_URL", "https://opendata.cwa.gov.tw/api/v1/rest/datastore"
        ).strip(),
        weather_timeout_seconds=_env_float("WEATHER_TIMEOUT_SECONDS", 10.0),
        mcp_accounting_sse_url=os.getenv("MCP_ACCOUNTING_SSE_URL", "").strip(),
        mcp_medical_sse_url=os.getenv("MCP_MEDICAL_SSE_URL", "").strip(),
        mcp_reference_sse_url=os.getenv("MCP_REFERENCE_SSE_URL", "").strip(),
        mcp_timeout_seconds=_env_float("MCP_TIMEOUT_SECONDS", 8.0),
        primary_timeout_seconds=_env_float("PRIMARY_TIMEOUT_SECONDS", 30.0),
        escalation_timeout_seconds=_env_float("ESCALATION_TIMEOUT_SECONDS", 60.0),
        learning_enabled=_env_bool("LEARNING_ENABLED", True),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    project_root = Path(__file__).resolve().parents[1]
    load_dotenv(project_root / ".env")

    data_dir_raw = os.getenv("DATA_DIR", "").strip()
    data_dir = Path(data_dir_raw).expanduser() if data_dir_raw else None

    settings = build_settings(project_root, data_dir)
    ensure_directories(settings)
    return settings


def ensure_directories(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.sessions_dir.mkdir(parents=True, exist_ok=True)
    settings.rag_dir.mkdir(parents=True, exist_ok=True)
    settings.uploads_dir.mkdir(parents=True, exist_ok=True)
    settings.learned_dir.mkdir(parents=True, exist_ok=True)
