from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from config import ComparisonConfig, TargetConfig
from records import GenerationParameters, Provider


@pytest.fixture
def registry(tmp_path: Path) -> ComparisonConfig:
    return ComparisonConfig(tmp_path / "compare.toml")


def test_save_and_load_round_trip(registry: ComparisonConfig) -> None:
    registry.save_target(
        TargetConfig(name="fast", provider=Provider.OPENAI, model="gpt-4o-mini")
    )
    registry.save_target(
        TargetConfig(
            name="claude \"quoted\"",
            provider=Provider.ANTHROPIC,
            model="claude-3-5-sonnet-20241022",
            display_name="Claude Sonnet",
            context_window=200000,
            api_key_env="TEAM_ANTHROPIC_KEY",
        )
    )

    loaded = registry.load()
    assert set(loaded) == {"fast", 'claude "quoted"'}
    assert loaded["fast"].provider is Provider.OPENAI
    assert loaded['claude "quoted"'].context_window == 200000
    assert loaded['claude "quoted"'].api_key_env == "TEAM_ANTHROPIC_KEY"


def test_list_targets_returns_name_sorted(registry: ComparisonConfig) -> None:
    registry.save_target(TargetConfig(name="zeta", provider=Provider.GOOGLE, model="gemini-2.5-pro"))
    registry.save_target(TargetConfig(name="alpha", provider=Provider.OPENAI, model="gpt-4o"))
    assert [target.name for target in registry.list_targets()] == ["alpha", "zeta"]


def test_remove_target(registry: ComparisonConfig) -> None:
    registry.save_target(TargetConfig(name="fast", provider=Provider.OPENAI, model="gpt-4o-mini"))
    registry.remove_target("fast")
    assert registry.load() == {}
    with pytest.raises(KeyError):
        registry.remove_target("fast")


def test_unknown_provider_in_file_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "compare.toml"
    path.write_text('[targets.x]\nprovider = "mistral"\nmodel = "m"\n', encoding="utf-8")
    with pytest.raises(ValueError, match="unknown provider"):
        ComparisonConfig(path).load()


def test_missing_model_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "compare.toml"
    path.write_text('[targets.x]\nprovider = "openai"\n', encoding="utf-8")
    with pytest.raises(ValueError, match="model"):
        ComparisonConfig(path).load()


def test_request_target_reads_credential_from_environment() -> None:
    target = TargetConfig(name="t", provider=Provider.ANTHROPIC, model="claude-3-haiku-20240307")
    resolved = target.to_request_target({"ANTHROPIC_API_KEY": " ak-123 "})
    assert resolved.credential == "ak-123"
    assert resolved.display_name == "Claude 3 Haiku"
    assert resolved.context_window == 8192

    assert target.to_request_target({}).credential is None
    custom = TargetConfig(
        name="t", provider=Provider.OPENAI, model="gpt-4o", api_key_env="MY_KEY"
    )
    assert custom.to_request_target({"MY_KEY": "sk", "OPENAI_API_KEY": "other"}).credential == "sk"


def test_settings_and_endpoints_survive_target_writes(registry: ComparisonConfig) -> None:
    registry.set_setting("temperature", 0.2)
    registry.set_setting("max_tokens", 512)
    registry.set_setting("streaming", False)
    registry.set_endpoint(Provider.OPENAI, "http://localhost:8080/openai")
    registry.save_target(TargetConfig(name="fast", provider=Provider.OPENAI, model="gpt-4o-mini"))

    assert registry.get_setting("streaming") is False
    assert registry.get_setting("missing", "default") == "default"
    assert registry.endpoints() == {Provider.OPENAI: "http://localhost:8080/openai"}
    assert registry.generation_parameters() == GenerationParameters(
        temperature=0.2, max_output_tokens=512
    )

    registry.set_endpoint(Provider.OPENAI, None)
    assert registry.endpoints() == {}


def test_generation_parameters_defaults(registry: ComparisonConfig) -> None:
    assert registry.generation_parameters() == GenerationParameters()


def test_invalid_temperature_setting_is_rejected(registry: ComparisonConfig) -> None:
    registry.set_setting("temperature", 1.5)
    with pytest.raises(ValueError, match="temperature"):
        registry.generation_parameters()


def test_settings_with_control_characters_survive_reload(registry: ComparisonConfig) -> None:
    value = 'line one\nline "two"\ttabbed\r\x01\x7f\\end'
    registry.set_setting("system_prompt", value)
    registry.save_target(
        TargetConfig(
            name="multi\nline", provider=Provider.OPENAI, model="gpt-4o", display_name="A\tB"
        )
    )

    assert registry.get_setting("system_prompt") == value
    assert registry.get_target("multi\nline").display_name == "A\tB"
