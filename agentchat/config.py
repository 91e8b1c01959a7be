"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < env vars < CLI flags

Per-session credentials are not configuration: they live in each session's
state and are layered on top of ``llm`` at client build time.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LLMConfig:
    api_base: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-4o"
    timeout_seconds: int = 120
    max_retries: int = 2


@dataclass
class ChatConfig:
    system_prompt: str = "You are a helpful AI assistant."
    history_limit: int = 10
    tool_timeout_seconds: float = 30.0


@dataclass
class ToolsConfig:
    builtin: list[str] = field(default_factory=lambda: ["get_current_time", "calculate"])
    disabled: list[str] = field(default_factory=list)
    plugins_enabled: bool = False


@dataclass
class SessionConfig:
    db_path: str = "~/.agentchat/sessions.db"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8787
    stream_buffer: int = 16
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class AppConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in (raw or {}).items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "AGENTCHAT_LLM_API_BASE":        ("llm.api_base", str),
    "AGENTCHAT_LLM_API_KEY_ENV":     ("llm.api_key_env", str),
    "AGENTCHAT_LLM_MODEL":           ("llm.model", str),
    "AGENTCHAT_LLM_TIMEOUT":         ("llm.timeout_seconds", int),
    "AGENTCHAT_LLM_MAX_RETRIES":     ("llm.max_retries", int),
    "AGENTCHAT_CHAT_SYSTEM_PROMPT":  ("chat.system_prompt", str),
    "AGENTCHAT_CHAT_HISTORY_LIMIT":  ("chat.history_limit", int),
    "AGENTCHAT_CHAT_TOOL_TIMEOUT":   ("chat.tool_timeout_seconds", float),
    "AGENTCHAT_TOOLS_BUILTIN":       ("tools.builtin", list),
    "AGENTCHAT_TOOLS_DISABLED":      ("tools.disabled", list),
    "AGENTCHAT_TOOLS_PLUGINS":       ("tools.plugins_enabled", bool),
    "AGENTCHAT_SESSION_DB":          ("session.db_path", str),
    "AGENTCHAT_SERVER_HOST":         ("server.host", str),
    "AGENTCHAT_SERVER_PORT":         ("server.port", int),
    "AGENTCHAT_SERVER_STREAM_BUFFER": ("server.stream_buffer", int),
    "AGENTCHAT_LOG_LEVEL":           ("server.log_level", str),
}


def find_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "agentchat.yaml",
        Path.cwd() / "agentchat.yml",
        Path.home() / ".config" / "agentchat" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Build an AppConfig by layering sources in precedence order:

        defaults  <  config file  <  env vars  <  CLI flags

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}

    cfg = AppConfig(
        llm=_build_section(LLMConfig, raw.get("llm", {})),
        chat=_build_section(ChatConfig, raw.get("chat", {})),
        tools=_build_section(ToolsConfig, raw.get("tools", {})),
        session=_build_section(SessionConfig, raw.get("session", {})),
        server=_build_section(ServerConfig, raw.get("server", {})),
    )

    # --- 2. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 3. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            if value is not None:
                _apply_dotpath(cfg, dotpath, value)

    return cfg
