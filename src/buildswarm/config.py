"""
Configuration for BuildSwarm
============================

Loaded from a YAML (or JSON) file, looked up in a few conventional places,
with built-in defaults for anything missing and a handful of environment
overrides for the settings people change per machine.

Example buildswarm.yaml:

    model_config:
      mode: single
      single_model:
        url: http://localhost:11434
        model: qwen2.5-coder:14b
        api_type: ollama
    execution:
      timeout_seconds: 8
      allow_interactive_fallback: false
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .models import Role

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "buildswarm.yaml"


class ConfigError(Exception):
    """Raised when a configuration file exists but cannot be used."""


def _get_default_config() -> Dict[str, Any]:
    """Default configuration"""
    return {
        "model_config": {
            "mode": "single",
            "single_model": {
                "url": "http://localhost:11434",
                "model": "qwen2.5-coder:14b",
                "api_type": "ollama",
                "timeout": 600,
            },
            "multi_model": {},
        },
        "agent_parameters": {
            "generator": {"temperature": 0.2, "max_tokens": 6000},
            "validator": {"temperature": 0.1, "max_tokens": 1500},
        },
        "workflow": {
            "max_iterations": 15,
            "directive_max_length": 240,
            "sessions_dir": "sessions",
        },
        "build": {
            "compiler": "dotnet",
            "build_args": ["build", "--nologo", "-c", "Release"],
            "sdk_version": "10.0.103",
            "artifacts_root": "GeneratedArtifacts",
            "compile_dedup_seconds": 15.0,
            "cache_max_entries": 32,
            "compile_timeout": None,
        },
        "execution": {
            "runtime": "dotnet",
            "timeout_seconds": 8.0,
            "gui_timeout_seconds": 8.0,
            "allow_interactive_fallback": False,
        },
        "logging": {
            "log_dir": "logs",
            "level": "DEBUG",
            "console_level": "WARNING",
        },
    }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ModelSettings:
    """Endpoint and sampling parameters for one LLM-backed role"""
    url: str = "http://localhost:11434"
    model: str = "local-model"
    api_type: str = "ollama"  # "openai" or "ollama"
    timeout: int = 600
    temperature: float = 0.7
    max_tokens: int = 4000
    top_p: float = 0.9


@dataclass
class BuildSettings:
    compiler: str = "dotnet"
    build_args: List[str] = field(default_factory=lambda: ["build", "--nologo", "-c", "Release"])
    sdk_version: str = "10.0.103"
    artifacts_root: str = "GeneratedArtifacts"
    compile_dedup_seconds: float = 15.0
    cache_max_entries: int = 32
    compile_timeout: Optional[float] = None


@dataclass
class ExecutionSettings:
    runtime: str = "dotnet"
    timeout_seconds: float = 8.0
    gui_timeout_seconds: float = 8.0
    allow_interactive_fallback: bool = False


@dataclass
class WorkflowSettings:
    max_iterations: int = 15
    directive_max_length: int = 240
    sessions_dir: str = "sessions"


@dataclass
class LoggingSettings:
    log_dir: str = "logs"
    level: str = "DEBUG"
    console_level: str = "WARNING"


@dataclass
class SwarmConfig:
    raw: Dict[str, Any] = field(default_factory=_get_default_config)
    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)
    build: BuildSettings = field(default_factory=BuildSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "SwarmConfig":
        """Build a config from a (possibly partial) dict layered over the defaults."""
        raw = _deep_merge(_get_default_config(), data or {})
        workflow = raw["workflow"]
        build = raw["build"]
        execution = raw["execution"]
        log = raw["logging"]
        compile_timeout = build.get("compile_timeout")
        return cls(
            raw=raw,
            workflow=WorkflowSettings(
                max_iterations=int(workflow["max_iterations"]),
                directive_max_length=int(workflow["directive_max_length"]),
                sessions_dir=str(workflow["sessions_dir"]),
            ),
            build=BuildSettings(
                compiler=str(build["compiler"]),
                build_args=[str(a) for a in build["build_args"]],
                sdk_version=str(build["sdk_version"]),
                artifacts_root=str(build["artifacts_root"]),
                compile_dedup_seconds=float(build["compile_dedup_seconds"]),
                cache_max_entries=int(build["cache_max_entries"]),
                compile_timeout=float(compile_timeout) if compile_timeout is not None else None,
            ),
            execution=ExecutionSettings(
                runtime=str(execution["runtime"]),
                timeout_seconds=float(execution["timeout_seconds"]),
                gui_timeout_seconds=float(execution["gui_timeout_seconds"]),
                allow_interactive_fallback=bool(execution["allow_interactive_fallback"]),
            ),
            logging=LoggingSettings(
                log_dir=str(log["log_dir"]),
                level=str(log["level"]),
                console_level=str(log["console_level"]),
            ),
        )

    def model_for(self, role: Role) -> ModelSettings:
        """
        Resolve endpoint + sampling parameters for a role.

        In multi mode a role-specific block wins; otherwise (or when the role
        has none) the single_model block is used.
        """
        model_config = self.raw.get("model_config", {})
        endpoint = dict(model_config.get("single_model", {}))
        if model_config.get("mode") == "multi":
            role_block = model_config.get("multi_model", {}).get(role.value)
            if role_block:
                endpoint.update(role_block)

        params = self.raw.get("agent_parameters", {}).get(role.value, {})
        defaults = ModelSettings()
        return ModelSettings(
            url=endpoint.get("url", defaults.url),
            model=endpoint.get("model", defaults.model),
            api_type=endpoint.get("api_type", defaults.api_type),
            timeout=int(endpoint.get("timeout", defaults.timeout)),
            temperature=float(params.get("temperature", defaults.temperature)),
            max_tokens=int(params.get("max_tokens", defaults.max_tokens)),
            top_p=float(params.get("top_p", defaults.top_p)),
        )


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    data = copy.deepcopy(data)
    single = data.setdefault("model_config", {}).setdefault("single_model", {})

    if os.environ.get("BUILDSWARM_MODEL_URL"):
        single["url"] = os.environ["BUILDSWARM_MODEL_URL"]
    if os.environ.get("BUILDSWARM_MODEL"):
        single["model"] = os.environ["BUILDSWARM_MODEL"]
    if os.environ.get("BUILDSWARM_API_TYPE"):
        single["api_type"] = os.environ["BUILDSWARM_API_TYPE"]
    if os.environ.get("BUILDSWARM_DOTNET_SDK_VERSION", "").strip():
        data.setdefault("build", {})["sdk_version"] = os.environ["BUILDSWARM_DOTNET_SDK_VERSION"].strip()
    if os.environ.get("BUILDSWARM_ALLOW_INTERACTIVE_FALLBACK"):
        data.setdefault("execution", {})["allow_interactive_fallback"] = _env_bool(
            os.environ["BUILDSWARM_ALLOW_INTERACTIVE_FALLBACK"]
        )
    if os.environ.get("BUILDSWARM_EXECUTION_TIMEOUT"):
        try:
            timeout = float(os.environ["BUILDSWARM_EXECUTION_TIMEOUT"])
        except ValueError:
            raise ConfigError(
                f"BUILDSWARM_EXECUTION_TIMEOUT must be a number, got "
                f"{os.environ['BUILDSWARM_EXECUTION_TIMEOUT']!r}"
            )
        data.setdefault("execution", {})["timeout_seconds"] = timeout
    return data


def load_config(config_file: Optional[str] = None) -> SwarmConfig:
    """Load configuration from file, falling back to defaults."""
    config_file = config_file or os.environ.get("BUILDSWARM_CONFIG_FILE") or DEFAULT_CONFIG_FILE

    # Try multiple paths
    paths_to_try = [
        config_file,
        os.path.join("config", config_file),
        os.path.join(os.path.dirname(__file__), config_file),
    ]

    data: Dict[str, Any] = {}
    for path in paths_to_try:
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}")
            if loaded is not None and not isinstance(loaded, dict):
                raise ConfigError(f"Config root in {path} must be a mapping")
            data = loaded or {}
            logger.info(f"Loaded config from {path}")
            break
    else:
        logger.info("Config file not found, using defaults")

    return SwarmConfig.from_dict(_apply_env_overrides(data))
