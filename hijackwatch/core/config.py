# hijackwatch/core/config.py
from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, List
import yaml

log = logging.getLogger(__name__)


@dataclass
class Settings:
    # Server / external
    allowed_origins: List[str]
    # Cookie/session (issued by the auth layer, read here)
    session_cookie_name: str
    session_secret_key: Optional[str]
    dev_allow_insecure_cookie: bool
    # DB
    db_path: str
    # Reasoning model
    llm_model: str
    llm_api_key: Optional[str]
    llm_base_url: Optional[str]
    llm_timeout_seconds: float
    llm_max_tokens: int
    # Feature toggles
    model_picker_enabled: bool
    # Logging
    log_level: str
    # Informational
    cfg_file_used: Optional[str] = None

    @property
    def https_only(self) -> bool:
        return not self.dev_allow_insecure_cookie

_DEFAULTS: Dict[str, Any] = {
    "server": {
        "allowed_origins": ["http://localhost:8000"],
    },
    "db": {"path": "../data/hijackwatch.db"},
    "session": {
        "cookie_name": "hijackwatch_session",
        "secret_key": None,  # if None, app will generate an ephemeral key on startup (dev only)
        "dev_allow_insecure_cookie": True,
    },
    "llm": {
        "model": "gpt-4o-mini",
        "api_key": None,
        "base_url": None,
        "timeout_seconds": 30,
        "max_tokens": 512,
    },
    "features": {"model_picker_enabled": False},
    "logging": {"level": "INFO"},
}

_SEARCH_ORDER = (
    "hijackwatch.yaml",
    "hijackwatch.yml",
    "hijackwatch.dev.yaml",
)

_TRUTHY = ("1", "true", "yes", "on")

def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out

def _resolve_path(s: str, base_dir: Path) -> Optional[Path]:
    """
    Try multiple resolution strategies for a relative path:
    - as given relative to CWD
    - relative to the project root
    - relative to the parent of the project root
    Return first existing path; else None.
    """
    p = Path(s)
    if p.is_absolute():
        return p if p.exists() else None
    candidates = [
        Path.cwd() / p,
        base_dir / p,
        base_dir.parent / p,
        p,  # raw relative
    ]
    for c in candidates:
        if c.exists():
            return c
    return None

def _substitute_env_vars(obj: Any) -> Any:
    """Replace "${VAR_NAME}" string values with the environment value; unset resolves to None."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        env_value = os.getenv(obj[2:-1])
        if env_value:
            return env_value
        log.warning("Environment variable %s not found, leaving setting unset", obj[2:-1])
        return None
    return obj

def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load YAML settings with sensible overrides:

    Priority:
      1) explicit `path` arg (absolute or relative)
      2) env HIJACKWATCH_CONFIG (absolute or relative; robustly resolved)
      3) search order in project root: hijackwatch.yaml|yml|hijackwatch.dev.yaml

    Secrets and toggles can always be overridden from the environment:
    OPENAI_API_KEY, OPENAI_BASE_URL, HIJACKWATCH_LLM_MODEL,
    HIJACKWATCH_MODEL_PICKER_ENABLED, HIJACKWATCH_DB_PATH.
    """
    base_dir = Path(__file__).resolve().parent.parent.parent  # Go up to project root
    cfg_file_used: Optional[Path] = None

    if path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = _resolve_path(path, base_dir) or candidate
        if not candidate or not candidate.exists():
            raise FileNotFoundError(f"Config file not found: {candidate}")
        cfg_file_used = candidate
    else:
        env_cfg = os.getenv("HIJACKWATCH_CONFIG")
        if env_cfg:
            candidate = _resolve_path(env_cfg, base_dir)
            if not candidate:
                tried = [
                    str(Path(env_cfg)),
                    str(base_dir / env_cfg),
                    str(base_dir.parent / env_cfg),
                    str(Path.cwd() / env_cfg),
                ]
                raise FileNotFoundError(
                    "HIJACKWATCH_CONFIG not found. Tried: " + ", ".join(tried)
                )
            cfg_file_used = candidate
        else:
            for name in _SEARCH_ORDER:
                p = base_dir / name
                if p.exists():
                    cfg_file_used = p
                    break

    data: Dict[str, Any] = {}
    if cfg_file_used:
        with open(cfg_file_used, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        data = _substitute_env_vars(data)
        log.info("Loaded config from: %s", str(cfg_file_used))

    cfg = _merge(_DEFAULTS, data)
    llm = cfg.get("llm") or {}
    features = cfg.get("features") or {}

    # Normalize db path
    db_path = os.getenv("HIJACKWATCH_DB_PATH") or (cfg.get("db") or {}).get("path") or "/tmp/hijackwatch.db"
    dbp = Path(db_path)
    if not dbp.is_absolute():
        # relative to the project root to ease local dev (e.g., data/hijackwatch.db)
        dbp = base_dir / dbp
    db_path = str(dbp)

    picker_env = os.getenv("HIJACKWATCH_MODEL_PICKER_ENABLED")
    if picker_env is not None:
        model_picker_enabled = picker_env.strip().lower() in _TRUTHY
    else:
        model_picker_enabled = bool(features.get("model_picker_enabled", False))

    s = Settings(
        allowed_origins=(cfg.get("server") or {}).get("allowed_origins", []),
        session_cookie_name=(cfg.get("session") or {}).get("cookie_name") or "hijackwatch_session",
        session_secret_key=(cfg.get("session") or {}).get("secret_key"),
        dev_allow_insecure_cookie=bool((cfg.get("session") or {}).get("dev_allow_insecure_cookie", False)),
        db_path=db_path,
        llm_model=os.getenv("HIJACKWATCH_LLM_MODEL") or llm.get("model") or "gpt-4o-mini",
        llm_api_key=os.getenv("OPENAI_API_KEY") or llm.get("api_key"),
        llm_base_url=os.getenv("OPENAI_BASE_URL") or llm.get("base_url"),
        llm_timeout_seconds=float(llm.get("timeout_seconds", 30)),
        llm_max_tokens=int(llm.get("max_tokens", 512)),
        model_picker_enabled=model_picker_enabled,
        log_level=str((cfg.get("logging") or {}).get("level") or "INFO").upper(),
        cfg_file_used=str(cfg_file_used) if cfg_file_used else None,
    )
    return s
