from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import tomllib

from adapters import DEFAULT_CONTEXT_WINDOW
from records import GenerationParameters, Provider, RequestTarget, display_name_for


logger = logging.getLogger(__name__)

DEFAULT_API_KEY_ENVS: dict[Provider, str] = {
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.ANTHROPIC: "ANTHROPIC_API_KEY",
    Provider.GOOGLE: "GOOGLE_API_KEY",
}


_TOML_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\b": "\\b",
    "\t": "\\t",
    "\n": "\\n",
    "\f": "\\f",
    "\r": "\\r",
}


def _escape_toml_string(value: str) -> str:
    parts: list[str] = []
    for char in value:
        if char in _TOML_ESCAPES:
            parts.append(_TOML_ESCAPES[char])
        elif ord(char) < 0x20 or ord(char) == 0x7F:
            parts.append(f"\\u{ord(char):04X}")
        else:
            parts.append(char)
    return "".join(parts)


def _coerce_optional_string(value: object) -> str | None:
    if value is None:
        return None
    parsed = str(value).strip()
    return parsed or None


def _format_toml_kv(key: str, value: object) -> str:
    if isinstance(value, str):
        return f'{key} = "{_escape_toml_string(value)}"'
    if isinstance(value, bool):
        return f"{key} = {'true' if value else 'false'}"
    if isinstance(value, int | float):
        return f"{key} = {value}"
    raise TypeError(f"Unsupported TOML value type: {type(value)!r}")


def _quote_key(key: str) -> str:
    return f'"{_escape_toml_string(key)}"'


@dataclass(slots=True)
class TargetConfig:
    name: str
    provider: Provider
    model: str
    display_name: str | None = None
    context_window: int | None = None
    api_key_env: str | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"provider": self.provider.value, "model": self.model}
        if self.display_name:
            data["display_name"] = self.display_name
        if self.context_window is not None:
            data["context_window"] = self.context_window
        if self.api_key_env:
            data["api_key_env"] = self.api_key_env
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict[str, object]) -> "TargetConfig":
        model = _coerce_optional_string(data.get("model"))
        if model is None:
            raise ValueError(f"Target {name!r} missing required field 'model'")

        provider_raw = _coerce_optional_string(data.get("provider"))
        if provider_raw is None:
            raise ValueError(f"Target {name!r} missing required field 'provider'")
        try:
            provider = Provider(provider_raw.lower())
        except ValueError:
            raise ValueError(
                f"Target {name!r} has unknown provider {provider_raw!r}"
            ) from None

        return cls(
            name=name,
            provider=provider,
            model=model,
            display_name=_coerce_optional_string(data.get("display_name")),
            context_window=(
                int(data["context_window"])
                if data.get("context_window") is not None
                else None
            ),
            api_key_env=_coerce_optional_string(data.get("api_key_env")),
        )

    def resolved_api_key_env(self) -> str:
        return self.api_key_env or DEFAULT_API_KEY_ENVS[self.provider]

    def to_request_target(self, environ: dict[str, str] | None = None) -> RequestTarget:
        env = os.environ if environ is None else environ
        credential = _coerce_optional_string(env.get(self.resolved_api_key_env()))
        return RequestTarget(
            provider=self.provider,
            model_id=self.model,
            display_name=self.display_name or display_name_for(self.model),
            context_window=self.context_window or DEFAULT_CONTEXT_WINDOW,
            credential=credential,
        )


class ComparisonConfig:
    """TOML-backed registry of targets, endpoint overrides and settings."""

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path

    def load(self) -> dict[str, TargetConfig]:
        raw = self._read_raw()
        targets_raw = raw.get("targets", {})
        if not isinstance(targets_raw, dict):
            raise ValueError("Top-level 'targets' must be a table")

        loaded: dict[str, TargetConfig] = {}
        for name, data in targets_raw.items():
            if not isinstance(data, dict):
                raise ValueError(f"Target {name!r} entry must be a table")
            loaded[str(name)] = TargetConfig.from_dict(str(name), data)
        logger.debug("Loaded %d target(s) from %s", len(loaded), self.config_path)
        return loaded

    def list_targets(self) -> list[TargetConfig]:
        targets = self.load()
        return [targets[name] for name in sorted(targets)]

    def get_target(self, name: str) -> TargetConfig:
        targets = self.load()
        if name not in targets:
            raise KeyError(name)
        return targets[name]

    def save_target(self, target: TargetConfig) -> None:
        if not target.name.strip():
            raise ValueError("Target name cannot be empty")

        raw = self._read_raw()
        raw["targets"][target.name] = target.to_dict()
        self._write_raw(raw)
        logger.debug("Saved target %r to %s", target.name, self.config_path)

    def remove_target(self, name: str) -> None:
        raw = self._read_raw()
        if name not in raw["targets"]:
            raise KeyError(name)
        del raw["targets"][name]
        self._write_raw(raw)
        logger.debug("Removed target %r from %s", name, self.config_path)

    def endpoints(self) -> dict[Provider, str]:
        raw = self._read_raw()
        resolved: dict[Provider, str] = {}
        for provider_name, base_url in raw["endpoints"].items():
            try:
                provider = Provider(str(provider_name))
            except ValueError:
                raise ValueError(f"Unknown provider in endpoints: {provider_name!r}") from None
            value = _coerce_optional_string(base_url)
            if value:
                resolved[provider] = value
        return resolved

    def set_endpoint(self, provider: Provider, base_url: str | None) -> None:
        raw = self._read_raw()
        if base_url:
            raw["endpoints"][provider.value] = base_url
        else:
            raw["endpoints"].pop(provider.value, None)
        self._write_raw(raw)

    def get_setting(self, key: str, default: object = None) -> object:
        return self._read_raw()["settings"].get(key, default)

    def set_setting(self, key: str, value: str | int | float | bool) -> None:
        if not key.strip():
            raise ValueError("Setting key cannot be empty")
        raw = self._read_raw()
        raw["settings"][key] = value
        self._write_raw(raw)
        logger.debug("Saved setting %r to %s", key, self.config_path)

    def generation_parameters(self) -> GenerationParameters:
        defaults = GenerationParameters()
        return GenerationParameters(
            temperature=float(self.get_setting("temperature", defaults.temperature)),
            max_output_tokens=int(
                self.get_setting("max_tokens", defaults.max_output_tokens)
            ),
        )

    def _read_raw(self) -> dict[str, dict[str, object]]:
        parsed: dict[str, object] = {}
        if self.config_path.exists():
            with self.config_path.open("rb") as handle:
                parsed = tomllib.load(handle)

        for section in ("targets", "endpoints", "settings"):
            value = parsed.setdefault(section, {})
            if not isinstance(value, dict):
                raise ValueError(f"Top-level '{section}' must be a table")
        return parsed  # type: ignore[return-value]

    def _write_raw(self, data: dict[str, dict[str, object]]) -> None:
        lines: list[str] = []

        settings = data.get("settings", {})
        if settings:
            lines.append("[settings]")
            for key in sorted(settings):
                lines.append(_format_toml_kv(_quote_key(key), settings[key]))
            lines.append("")

        endpoints = data.get("endpoints", {})
        if endpoints:
            lines.append("[endpoints]")
            for key in sorted(endpoints):
                lines.append(_format_toml_kv(_quote_key(key), str(endpoints[key])))
            lines.append("")

        targets = data.get("targets", {})
        for target_name in sorted(targets):
            target_data = targets[target_name]
            if not isinstance(target_data, dict):
                raise ValueError(f"Target {target_name!r} entry must be a table")
            lines.append(f"[targets.{_quote_key(str(target_name))}]")
            for key in sorted(target_data):
                lines.append(_format_toml_kv(str(key), target_data[key]))
            lines.append("")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        content = "\n".join(lines).strip()
        self.config_path.write_text(
            content + ("\n" if content else ""), encoding="utf-8"
        )
