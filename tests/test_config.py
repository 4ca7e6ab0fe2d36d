"""Settings loading from INI files and the environment."""

import pytest

from sysprobe.config import (ConfigError, Settings, compositor_from_environment, load_settings,
                             write_default_config)


def test_defaults_without_any_file() -> None:
    settings = load_settings(environ={"HOME": "/home/alice"})

    assert settings == Settings(home="/home/alice")
    assert settings.loaded_from == []


def test_later_files_override_earlier_ones(tmp_path) -> None:
    system = tmp_path / "system.conf"
    system.write_text("[runner]\njobs = 2\ntimeout = 20\n[network]\nping_host = 1.1.1.1\n")
    user = tmp_path / "user.conf"
    user.write_text("[runner]\njobs = 4\n[collectors]\nstorage = true\nlogs = no\n")

    settings = load_settings(str(user), search_paths=[str(system)], environ={})

    assert settings.jobs == 4
    assert settings.timeout == 20.0
    assert settings.ping_host == "1.1.1.1"
    assert settings.collectors == {"storage": True, "logs": False}
    assert settings.loaded_from == [str(system), str(user)]


def test_invalid_value_is_a_config_error(tmp_path) -> None:
    path = tmp_path / "bad.conf"
    path.write_text("[runner]\njobs = many\n")

    with pytest.raises(ConfigError) as excinfo:
        load_settings(str(path), environ={})

    assert "[runner] jobs" in str(excinfo.value)


@pytest.mark.parametrize("content", [
    "[benchmark]\nduration = 5\ninterval = 10\n",
    "[runner]\njobs = 0\n",
    "[output]\nformat = pdf\n",
    "[logs]\nhours = -1\n",
])
def test_out_of_range_values_are_rejected(tmp_path, content) -> None:
    path = tmp_path / "range.conf"
    path.write_text(content)

    with pytest.raises(ConfigError):
        load_settings(str(path), environ={})


def test_missing_explicit_file(tmp_path) -> None:
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path / "absent.conf"))


def test_malformed_file(tmp_path) -> None:
    path = tmp_path / "broken.conf"
    path.write_text("jobs = 4\n")

    with pytest.raises(ConfigError):
        load_settings(str(path))


def test_compositor_falls_back_to_environment(tmp_path) -> None:
    assert compositor_from_environment({"XDG_CURRENT_DESKTOP": "ubuntu:GNOME"}) == "gnome"
    assert compositor_from_environment({"WAYLAND_COMPOSITOR": "sway", "XDG_CURRENT_DESKTOP": "KDE"}) == "sway"
    assert compositor_from_environment({}) is None

    path = tmp_path / "graphics.conf"
    path.write_text("[graphics]\ncompositor = kwin\n")
    assert load_settings(str(path), environ={"XDG_CURRENT_DESKTOP": "GNOME"}).compositor == "kwin"
    assert load_settings(environ={"XDG_CURRENT_DESKTOP": "GNOME"}).compositor == "gnome"


def test_default_config_round_trip(tmp_path) -> None:
    path = write_default_config(str(tmp_path / "conf" / "sysprobe.conf"))

    settings = load_settings(path, environ={})

    assert settings.collectors == {name: True for name in
                                   ("storage", "raid", "graphics", "network", "system", "logs")}
    assert settings.benchmark_directory is None
    assert settings.compositor is None
    assert settings.output_format == "txt"


def test_existing_file_is_not_overwritten(tmp_path) -> None:
    path = tmp_path / "sysprobe.conf"
    path.write_text("[runner]\njobs = 3\n")

    with pytest.raises(ConfigError):
        write_default_config(str(path))

    assert path.read_text() == "[runner]\njobs = 3\n"
    write_default_config(str(path), overwrite=True)
    assert "[collectors]" in path.read_text()
