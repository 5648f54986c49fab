from pathlib import Path

import pytest
from pydantic import ValidationError

import deckhand.config as config_module
from deckhand.config import Config, ContextConfig


def test_load_prefers_local_deckhand_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: openai\n  model: gpt-4o-mini\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    (tmp_path / "deckhand.yaml").write_text(
        "model:\n  model: glm-4.5\nagent:\n  max_tool_rounds: 12\n",
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.provider == "zai"
    assert cfg.model.model == "glm-4.5"
    assert cfg.agent.max_tool_rounds == 12


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("context:\n  max_messages: 30\n  keep_recent: 10\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.context.max_messages == 30
    assert cfg.context.keep_recent == 10


def test_missing_file_yields_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    cfg = Config.load()

    assert cfg.model.priming == "exchange"
    assert cfg.agent.max_tool_rounds == 400
    assert cfg.context.max_messages == 50


def test_environment_overrides_yaml(monkeypatch, tmp_path: Path):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text("model:\n  model: glm-4.5\n  temperature: 0.2\n", encoding="utf-8")
    monkeypatch.setenv("DECKHAND_MODEL__MODEL", "glm-4.6-air")

    cfg = Config.load(cfg_path)

    assert cfg.model.model == "glm-4.6-air"
    assert cfg.model.temperature == 0.2


def test_save_then_load(tmp_path: Path):
    cfg = Config()
    cfg.subagents.max_parallel_tasks = 7
    target = tmp_path / "nested" / "config.yaml"

    cfg.save(target)
    loaded = Config.load(target)

    assert loaded.subagents.max_parallel_tasks == 7
    assert loaded.tools.shell.blocked == cfg.tools.shell.blocked


@pytest.mark.parametrize("keep_recent, max_messages", [(20, 23), (0, 50), (47, 50)])
def test_context_window_must_fit_below_ceiling(keep_recent, max_messages):
    with pytest.raises(ValidationError):
        ContextConfig(keep_recent=keep_recent, max_messages=max_messages)


def test_smallest_valid_context_window():
    ctx = ContextConfig(keep_recent=2, max_messages=6)

    assert ctx.keep_recent == 2


def test_thoroughness_rounds():
    cfg = Config()

    assert cfg.thoroughness_rounds("quick") == 10
    assert cfg.thoroughness_rounds("medium") == 25
    assert cfg.thoroughness_rounds("thorough") == 50
    assert cfg.thoroughness_rounds("unknown") == 25


def test_get_config_caches_instance(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    monkeypatch.setattr(config_module, "_config", None)

    first = config_module.get_config()

    assert config_module.get_config() is first
