"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags < per-session overrides
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from agentloop.compaction import CompactionConfig
from agentloop.llm.models import KNOWN_APIS, Model, ModelRegistry
from agentloop.session import BACKENDS
from agentloop.types import ConfigError

CONFIG_SEARCH_PATHS = (
    "./agentloop.yaml",
    "./agentloop.yml",
    "~/.config/agentloop/config.yaml",
    "~/.agentloop/config.yaml",
)


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LLMConfig:
    provider: str = "openai"
    model: str = "gpt-4.1-mini"
    # Only needed for models missing from the registry.
    api: str = ""
    base_url: str = ""
    api_key_env: str = ""
    timeout_seconds: float = 120.0
    max_retries: int = 2
    max_tokens: int = 0
    temperature: float | None = None
    reasoning_effort: str = ""


@dataclass
class AgentConfig:
    name: str = "agentloop"
    prompt: str = "You are a helpful assistant."
    max_tool_iterations: int = 20
    input_guardrail: bool = False


@dataclass
class ToolsConfig:
    builtin: bool = True
    plugins_enabled: bool = False
    allow_plugins: list[str] = field(default_factory=list)


@dataclass
class SessionConfig:
    backend: str = "file"
    path: str = ""


@dataclass
class SkillsConfig:
    enabled: bool = True
    # Empty means ./.agentloop/skills then ~/.agentloop/skills.
    paths: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class AgentloopConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    skills: SkillsConfig = field(default_factory=SkillsConfig)
    models: list[dict[str, Any]] = field(default_factory=list)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'llm.model')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d

    # ----- derived values ----

    def model_registry(self) -> ModelRegistry:
        """Built-in models plus the ones declared under ``models:``."""
        registry = ModelRegistry.with_defaults()
        for raw in self.models:
            try:
                model = Model.from_dict(raw)
            except TypeError as exc:
                raise ConfigError(f"Invalid model definition {raw!r}: {exc}") from exc
            registry.register(model, overwrite=True)
        return registry

    def resolve_model(self, registry: ModelRegistry | None = None) -> Model:
        """
        The model named by ``llm.provider``/``llm.model``.

        A model missing from the registry is synthesized when ``llm.api`` is
        set; ``llm.base_url`` overrides the registered base URL.
        """
        registry = registry or self.model_registry()
        llm = self.llm
        try:
            model = registry.get(llm.provider, llm.model)
        except KeyError:
            if not llm.api:
                raise ConfigError(
                    f"Unknown model {llm.provider}/{llm.model}; "
                    "register it under 'models:' or set llm.api"
                ) from None
            model = Model(id=llm.model, api=llm.api, provider=llm.provider, base_url=llm.base_url)
        if llm.base_url and llm.base_url != model.base_url:
            model = replace(model, base_url=llm.base_url)
        return model

    def request_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.llm.max_tokens:
            options["max_tokens"] = self.llm.max_tokens
        if self.llm.temperature is not None:
            options["temperature"] = self.llm.temperature
        if self.llm.reasoning_effort:
            options["reasoning_effort"] = self.llm.reasoning_effort
        return options

    def adapter_options(self) -> dict[str, Any]:
        return {"timeout": self.llm.timeout_seconds, "max_retries": self.llm.max_retries}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise ConfigError(f"Unknown config key: {dotpath}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    try:
        if target_type is int:
            return int(value)
        if target_type is float:
            return float(value)
    except ValueError as exc:
        raise ConfigError(f"Expected {target_type.__name__}, got {value!r}") from exc
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section for {cls.__name__} must be a mapping")
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in raw.items() if k in valid_fields}
    return cls(**filtered)


def find_config_file() -> Path | None:
    for candidate in CONFIG_SEARCH_PATHS:
        p = Path(candidate).expanduser()
        if p.is_file():
            return p
    return None


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "AGENTLOOP_LLM_PROVIDER":             ("llm.provider", str),
    "AGENTLOOP_LLM_MODEL":                ("llm.model", str),
    "AGENTLOOP_LLM_API":                  ("llm.api", str),
    "AGENTLOOP_LLM_BASE_URL":             ("llm.base_url", str),
    "AGENTLOOP_LLM_API_KEY_ENV":          ("llm.api_key_env", str),
    "AGENTLOOP_LLM_TIMEOUT":              ("llm.timeout_seconds", float),
    "AGENTLOOP_LLM_MAX_RETRIES":          ("llm.max_retries", int),
    "AGENTLOOP_LLM_MAX_TOKENS":           ("llm.max_tokens", int),
    "AGENTLOOP_LLM_TEMPERATURE":          ("llm.temperature", float),
    "AGENTLOOP_LLM_REASONING_EFFORT":     ("llm.reasoning_effort", str),
    "AGENTLOOP_AGENT_NAME":               ("agent.name", str),
    "AGENTLOOP_AGENT_PROMPT":             ("agent.prompt", str),
    "AGENTLOOP_AGENT_MAX_TOOL_ITERATIONS": ("agent.max_tool_iterations", int),
    "AGENTLOOP_AGENT_INPUT_GUARDRAIL":    ("agent.input_guardrail", bool),
    "AGENTLOOP_COMPACTION_ENABLED":       ("compaction.enabled", bool),
    "AGENTLOOP_COMPACTION_RESERVE":       ("compaction.reserve_tokens", int),
    "AGENTLOOP_COMPACTION_KEEP_RECENT":   ("compaction.keep_recent_tokens", int),
    "AGENTLOOP_TOOLS_BUILTIN":            ("tools.builtin", bool),
    "AGENTLOOP_TOOLS_PLUGINS":            ("tools.plugins_enabled", bool),
    "AGENTLOOP_TOOLS_ALLOW_PLUGINS":      ("tools.allow_plugins", list),
    "AGENTLOOP_SESSION_BACKEND":          ("session.backend", str),
    "AGENTLOOP_SESSION_PATH":             ("session.path", str),
    "AGENTLOOP_SKILLS_ENABLED":           ("skills.enabled", bool),
    "AGENTLOOP_SKILLS_PATHS":             ("skills.paths", list),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> AgentloopConfig:
    """
    Build an AgentloopConfig by layering sources in precedence order:

        defaults  <  config file  <  profile  <  env vars  <  CLI flags

    Parameters
    ----------
    config_path : path to YAML config file; the search paths are tried when omitted
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    p = Path(config_path).expanduser() if config_path is not None else find_config_file()
    if p is not None and p.is_file():
        with p.open("r", encoding="utf-8") as f:
            try:
                file_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {p}: {exc}") from exc
        if not isinstance(file_data, dict):
            raise ConfigError(f"Config file {p} must contain a mapping")
        raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile:
        profile_data = raw.get("profiles", {}).get(profile)
        if profile_data is None:
            raise ConfigError(f"Unknown profile: {profile}")
        raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = AgentloopConfig(
        llm=_build_section(LLMConfig, raw.get("llm", {})),
        agent=_build_section(AgentConfig, raw.get("agent", {})),
        compaction=_build_section(CompactionConfig, raw.get("compaction", {})),
        tools=_build_section(ToolsConfig, raw.get("tools", {})),
        session=_build_section(SessionConfig, raw.get("session", {})),
        skills=_build_section(SkillsConfig, raw.get("skills", {})),
        models=list(raw.get("models", [])),
        profiles=raw.get("profiles", {}),
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            if value is not None:
                _apply_dotpath(cfg, dotpath, value)

    return cfg


def validate_config(cfg: AgentloopConfig) -> list[str]:
    """Problems with *cfg*, as human-readable strings (empty when valid)."""
    problems: list[str] = []
    if cfg.llm.api and cfg.llm.api not in KNOWN_APIS:
        problems.append(f"llm.api must be one of {list(KNOWN_APIS)}, got {cfg.llm.api!r}")
    if cfg.llm.timeout_seconds <= 0:
        problems.append("llm.timeout_seconds must be positive")
    if cfg.llm.max_retries < 0:
        problems.append("llm.max_retries must be >= 0")
    if cfg.agent.max_tool_iterations < 1:
        problems.append("agent.max_tool_iterations must be >= 1")
    if cfg.compaction.reserve_tokens < 0 or cfg.compaction.keep_recent_tokens < 0:
        problems.append("compaction token thresholds must be >= 0")
    if cfg.session.backend not in BACKENDS:
        problems.append(f"session.backend must be one of {list(BACKENDS)}, got {cfg.session.backend!r}")
    try:
        cfg.resolve_model()
    except (ConfigError, ValueError) as exc:
        problems.append(str(exc))
    return problems
