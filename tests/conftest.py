"""Shared fixtures: an isolated BASHKEEPER_HOME and a fresh tool runtime per test."""

import copy

import pytest

from bashkeeper_cli.config import DEFAULT_CONFIG, ENV_OVERRIDES


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    """Never read or write the real ~/.bashkeeper, and ignore overrides from the shell."""
    home = tmp_path / "bashkeeper_home"
    monkeypatch.setenv("BASHKEEPER_HOME", str(home))
    for name in ENV_OVERRIDES:
        # setenv first so values loaded from a test .env are undone too
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return home


@pytest.fixture()
def overflow_dir(tmp_path):
    path = tmp_path / "overflow"
    path.mkdir()
    return path


@pytest.fixture()
def make_runtime(overflow_dir):
    """Build the shared terminal runtime from DEFAULT_CONFIG plus overrides."""
    import tools.terminal_tool as terminal_tool

    def _make(**sections):
        config = copy.deepcopy(DEFAULT_CONFIG)
        config["output"]["overflow_dir"] = str(overflow_dir)
        for section, values in sections.items():
            config.setdefault(section, {}).update(values)
        return terminal_tool.configure(config)

    yield _make

    terminal_tool.shutdown()
    terminal_tool._runtime = None
