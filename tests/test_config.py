from __future__ import annotations

from pathlib import Path

import pytest

from reviewloop import config
from reviewloop.config import AppConfig, ConfigError


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_without_file_uses_defaults() -> None:
    loaded = config.load_config(None, env={})

    assert isinstance(loaded, AppConfig)
    assert loaded.runtime.base_dir == Path("~/.reviewloop").expanduser()
    assert loaded.runtime.poll_interval_seconds == 120
    assert loaded.runtime.state_db_path == loaded.runtime.base_dir / "state.db"
    assert loaded.runtime.workdirs_root == loaded.runtime.base_dir / "workdirs"
    assert loaded.resolver.auto_push is True
    assert loaded.resolver.max_stale_cycles == 3
    assert loaded.resolver.max_models_per_tool_round == 2
    assert loaded.resolver.verification_expiry_iterations == 5
    assert loaded.resolver.max_context_chars == 400_000
    assert loaded.oracle.provider == "anthropic"
    assert loaded.oracle.model == config.DEFAULT_ORACLE_MODELS["anthropic"]
    assert loaded.oracle.api_key_env == "ANTHROPIC_API_KEY"
    assert loaded.agents.preferred is None
    assert loaded.agents.models == ()


def test_load_config_full_file(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "reviewloop.toml",
        """
[runtime]
base_dir = "~/tmp/reviewloop"
poll_interval_seconds = 60

[resolver]
auto_push = false
max_fix_iterations = 4
max_push_iterations = 2
max_stale_cycles = 5
max_models_per_tool_round = 3
verification_expiry_iterations = 7
dismissal_min_chars = 30
batch_verification = false
max_context_chars = 50000
incremental_commits = false
merge_base = true
max_rapid_failures = 4

[oracle]
provider = "openai"
max_tokens = 2048
thinking_budget = 1024

[agents]
preferred = "claude"
order = ["claude", "codex"]
model = "sonnet"

[agents.models]
codex = ["gpt-5.2-codex", "gpt-5.1"]
claude = ["sonnet", "opus"]

[agents.extra_args]
aider = ["--no-auto-lint"]
""".strip(),
    )

    loaded = config.load_config(cfg_path, env={})

    assert loaded.runtime.base_dir.as_posix().endswith("/tmp/reviewloop")
    assert loaded.runtime.poll_interval_seconds == 60
    resolver = loaded.resolver
    assert resolver.auto_push is False
    assert resolver.max_fix_iterations == 4
    assert resolver.max_push_iterations == 2
    assert resolver.max_stale_cycles == 5
    assert resolver.max_models_per_tool_round == 3
    assert resolver.verification_expiry_iterations == 7
    assert resolver.dismissal_min_chars == 30
    assert resolver.batch_verification is False
    assert resolver.max_context_chars == 50_000
    assert resolver.incremental_commits is False
    assert resolver.merge_base is True
    assert resolver.max_rapid_failures == 4
    assert loaded.oracle.provider == "openai"
    assert loaded.oracle.model == config.DEFAULT_ORACLE_MODELS["openai"]
    assert loaded.oracle.api_key_env == "OPENAI_API_KEY"
    assert loaded.oracle.max_tokens == 2048
    assert loaded.oracle.thinking_budget == 1024
    assert loaded.agents.preferred == "claude"
    assert loaded.agents.order == ("claude", "codex")
    assert loaded.agents.model == "sonnet"
    assert loaded.agents.models_for("codex") == ("gpt-5.2-codex", "gpt-5.1")
    assert loaded.agents.models_for("aider") is None
    assert loaded.agents.extra_args_for("aider") == ("--no-auto-lint",)
    assert loaded.agents.extra_args_for("codex") == ()


def test_environment_overrides_take_precedence(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "reviewloop.toml",
        '[oracle]\nprovider = "anthropic"\n[agents]\npreferred = "codex"\n',
    )

    loaded = config.load_config(
        cfg_path,
        env={
            "REVIEWLOOP_ORACLE_PROVIDER": "openai",
            "REVIEWLOOP_ORACLE_MODEL": "gpt-5-mini",
            "REVIEWLOOP_TOOL": "aider",
        },
    )

    assert loaded.oracle.provider == "openai"
    assert loaded.oracle.model == "gpt-5-mini"
    assert loaded.agents.preferred == "aider"


def test_preferred_auto_means_no_preference() -> None:
    loaded = config.load_config(None, env={"REVIEWLOOP_TOOL": "auto"})
    assert loaded.agents.preferred is None


def test_missing_config_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        config.load_config(tmp_path / "missing.toml", env={})


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("[runtime]\npoll_interval_seconds = 1\n", "poll_interval_seconds must be >= 5"),
        ("[resolver]\nmax_stale_cycles = 0\n", "max_stale_cycles must be >= 1"),
        ("[resolver]\nmax_fix_iterations = -1\n", "max_fix_iterations must be >= 0"),
        ("[resolver]\nmax_context_chars = 10\n", "max_context_chars must be >= 1000"),
        ("[resolver]\nauto_push = \"yes\"\n", "auto_push must be a boolean"),
        ("[resolver]\nmax_push_iterations = true\n", "max_push_iterations must be an integer"),
        ("[oracle]\nprovider = \"gemini\"\n", "oracle.provider must be one of"),
        ("[oracle]\nmodel = \"bad model\"\n", "oracle.model has invalid characters"),
        ("[oracle]\nthinking_budget = 0\n", "thinking_budget must be an integer >= 1"),
        ("[agents]\nmodel = \"x;rm\"\n", "agents.model has invalid characters"),
        ("[agents.models]\ncodex = []\n", "agents.models.codex must list at least one model"),
        ("[agents.models]\ncodex = [\"ok\", \"$(bad)\"]\n", "invalid model name"),
        ("[agents]\norder = \"codex\"\n", "order must be a list of strings"),
        ("resolver = 3\n", r"\[resolver\] must be a TOML table"),
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, content: str, message: str) -> None:
    cfg_path = _write(tmp_path / "reviewloop.toml", content)
    with pytest.raises(ConfigError, match=message):
        config.load_config(cfg_path, env={})


@pytest.mark.parametrize(
    ("name", "valid"),
    [
        ("gpt-5.2-codex", True),
        ("anthropic/claude-sonnet-4.5", True),
        ("model_v2", True),
        ("", False),
        ("has space", False),
        ("semi;colon", False),
    ],
)
def test_is_valid_model_name(name: str, valid: bool) -> None:
    assert config.is_valid_model_name(name) is valid
