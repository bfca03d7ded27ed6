from __future__ import annotations

from pathlib import Path
import tomllib


def test_pyproject_declares_cli_script() -> None:
    pyproject_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
    data = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    scripts = data["project"]["scripts"]
    assert scripts["llm-compare"] == "cli:main"


def test_pyproject_installs_every_source_module() -> None:
    root = Path(__file__).resolve().parents[1]
    data = tomllib.loads((root / "pyproject.toml").read_text(encoding="utf-8"))
    declared = set(data["tool"]["setuptools"]["py-modules"])
    on_disk = {path.stem for path in (root / "src").glob("*.py")}
    assert declared == on_disk
