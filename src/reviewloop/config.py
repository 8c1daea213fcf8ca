from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from pathlib import Path
import re
import tomllib
from typing import cast

from reviewloop.models import OracleProvider


MODEL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")
DEFAULT_ORACLE_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-5-20250929",
    "openai": "gpt-5.2",
}
DEFAULT_API_KEY_ENVS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    poll_interval_seconds: int = 120

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"

    @property
    def workdirs_root(self) -> Path:
        return self.base_dir / "workdirs"


@dataclass(frozen=True)
class ResolverConfig:
    auto_push: bool = True
    max_fix_iterations: int = 0
    max_push_iterations: int = 0
    max_stale_cycles: int = 3
    max_models_per_tool_round: int = 2
    verification_expiry_iterations: int = 5
    dismissal_min_chars: int = 20
    batch_verification: bool = True
    max_context_chars: int = 400_000
    incremental_commits: bool = True
    merge_base: bool = False
    rapid_failure_ms: int = 2000
    rapid_failure_window_ms: int = 10_000
    max_rapid_failures: int = 3
    dry_run: bool = False
    no_commit: bool = False
    no_push: bool = False
    reverify: bool = False


@dataclass(frozen=True)
class OracleConfig:
    provider: OracleProvider = "anthropic"
    model: str = DEFAULT_ORACLE_MODELS["anthropic"]
    api_key_env: str = DEFAULT_API_KEY_ENVS["anthropic"]
    max_tokens: int = 4096
    max_retries: int = 3
    thinking_budget: int | None = None


@dataclass(frozen=True)
class AgentsConfig:
    preferred: str | None = None
    order: tuple[str, ...] = ()
    model: str | None = None
    models: tuple[tuple[str, tuple[str, ...]], ...] = ()
    extra_args: tuple[tuple[str, tuple[str, ...]], ...] = ()

    def models_for(self, tool: str) -> tuple[str, ...] | None:
        for name, models in self.models:
            if name == tool:
                return models
        return None

    def extra_args_for(self, tool: str) -> tuple[str, ...]:
        for name, args in self.extra_args:
            if name == tool:
                return args
        return ()


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)


class ConfigError(ValueError):
    pass


def is_valid_model_name(model: str) -> bool:
    return bool(MODEL_NAME_PATTERN.match(model))


def load_config(path: Path | None, *, env: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from a TOML file.

    ``path=None`` means "no file": every setting takes its default. Environment
    overrides (``REVIEWLOOP_ORACLE_PROVIDER``, ``REVIEWLOOP_ORACLE_MODEL`` and
    ``REVIEWLOOP_TOOL``) are applied on top of the file.
    """
    data: dict[str, object] = {}
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        with path.open("rb") as fh:
            data = tomllib.load(fh)

    environ = os.environ if env is None else env
    runtime_data = _optional_table(data, "runtime") or {}
    resolver_data = _optional_table(data, "resolver") or {}
    oracle_data = _optional_table(data, "oracle") or {}
    agents_data = _optional_table(data, "agents") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_str_with_default(runtime_data, "base_dir", "~/.reviewloop")).expanduser(),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 120),
    )
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")

    return AppConfig(
        runtime=runtime,
        resolver=_parse_resolver_config(resolver_data),
        oracle=_parse_oracle_config(oracle_data, environ=environ),
        agents=_parse_agents_config(agents_data, environ=environ),
    )


def _parse_resolver_config(data: dict[str, object]) -> ResolverConfig:
    resolver = ResolverConfig(
        auto_push=_bool_with_default(data, "auto_push", True),
        max_fix_iterations=_int_with_default(data, "max_fix_iterations", 0),
        max_push_iterations=_int_with_default(data, "max_push_iterations", 0),
        max_stale_cycles=_int_with_default(data, "max_stale_cycles", 3),
        max_models_per_tool_round=_int_with_default(data, "max_models_per_tool_round", 2),
        verification_expiry_iterations=_int_with_default(
            data, "verification_expiry_iterations", 5
        ),
        dismissal_min_chars=_int_with_default(data, "dismissal_min_chars", 20),
        batch_verification=_bool_with_default(data, "batch_verification", True),
        max_context_chars=_int_with_default(data, "max_context_chars", 400_000),
        incremental_commits=_bool_with_default(data, "incremental_commits", True),
        merge_base=_bool_with_default(data, "merge_base", False),
        rapid_failure_ms=_int_with_default(data, "rapid_failure_ms", 2000),
        rapid_failure_window_ms=_int_with_default(data, "rapid_failure_window_ms", 10_000),
        max_rapid_failures=_int_with_default(data, "max_rapid_failures", 3),
    )
    if resolver.max_fix_iterations < 0:
        raise ConfigError("resolver.max_fix_iterations must be >= 0")
    if resolver.max_push_iterations < 0:
        raise ConfigError("resolver.max_push_iterations must be >= 0")
    if resolver.max_stale_cycles < 1:
        raise ConfigError("resolver.max_stale_cycles must be >= 1")
    if resolver.max_models_per_tool_round < 1:
        raise ConfigError("resolver.max_models_per_tool_round must be >= 1")
    if resolver.verification_expiry_iterations < 1:
        raise ConfigError("resolver.verification_expiry_iterations must be >= 1")
    if resolver.dismissal_min_chars < 1:
        raise ConfigError("resolver.dismissal_min_chars must be >= 1")
    if resolver.max_context_chars < 1000:
        raise ConfigError("resolver.max_context_chars must be >= 1000")
    if resolver.max_rapid_failures < 1:
        raise ConfigError("resolver.max_rapid_failures must be >= 1")
    return resolver


def _parse_oracle_config(data: dict[str, object], *, environ: Mapping[str, str]) -> OracleConfig:
    provider_raw = environ.get("REVIEWLOOP_ORACLE_PROVIDER") or _str_with_default(
        data, "provider", "anthropic"
    )
    if provider_raw not in DEFAULT_ORACLE_MODELS:
        raise ConfigError(
            f"oracle.provider must be one of: anthropic, openai (got {provider_raw!r})"
        )
    provider = cast(OracleProvider, provider_raw)
    model = environ.get("REVIEWLOOP_ORACLE_MODEL") or _str_with_default(
        data, "model", DEFAULT_ORACLE_MODELS[provider]
    )
    if not is_valid_model_name(model):
        raise ConfigError(f"oracle.model has invalid characters: {model!r}")
    oracle = OracleConfig(
        provider=provider,
        model=model,
        api_key_env=_str_with_default(data, "api_key_env", DEFAULT_API_KEY_ENVS[provider]),
        max_tokens=_int_with_default(data, "max_tokens", 4096),
        max_retries=_int_with_default(data, "max_retries", 3),
        thinking_budget=_optional_positive_int(data, "thinking_budget"),
    )
    if oracle.max_tokens < 1:
        raise ConfigError("oracle.max_tokens must be >= 1")
    if oracle.max_retries < 1:
        raise ConfigError("oracle.max_retries must be >= 1")
    return oracle


def _parse_agents_config(data: dict[str, object], *, environ: Mapping[str, str]) -> AgentsConfig:
    preferred = environ.get("REVIEWLOOP_TOOL") or _optional_str(data, "preferred")
    if preferred == "auto":
        preferred = None
    model = _optional_str(data, "model")
    if model is not None and not is_valid_model_name(model):
        raise ConfigError(f"agents.model has invalid characters: {model!r}")

    models: list[tuple[str, tuple[str, ...]]] = []
    models_table = _optional_table(data, "models") or {}
    for tool in sorted(models_table):
        tool_models = _tuple_of_str(models_table, tool)
        if not tool_models:
            raise ConfigError(f"agents.models.{tool} must list at least one model")
        for candidate in tool_models:
            if not is_valid_model_name(candidate):
                raise ConfigError(f"agents.models.{tool} has invalid model name: {candidate!r}")
        models.append((tool, tool_models))

    extra_args: list[tuple[str, tuple[str, ...]]] = []
    extra_table = _optional_table(data, "extra_args") or {}
    for tool in sorted(extra_table):
        extra_args.append((tool, _tuple_of_str(extra_table, tool)))

    return AgentsConfig(
        preferred=preferred,
        order=_tuple_of_str_with_default(data, "order", ()),
        model=model,
        models=tuple(models),
        extra_args=tuple(extra_args),
    )


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)


def _optional_positive_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be an integer >= 1 if provided")
    return value
