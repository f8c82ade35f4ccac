"""Tests for the winecellar command line."""

import json

import pytest

from winecellar import __version__
from winecellar.cli import main
from winecellar.config.parser import CONFIG_FILE_NAME, load_config

FAKE_WINE = """#!/bin/sh
if [ "$1" = "wineboot" ]; then
    mkdir -p "$WINEPREFIX/drive_c/users/$USER" "$WINEPREFIX/dosdevices"
    echo "WINE REGISTRY Version 2" > "$WINEPREFIX/system.reg"
fi
exit 0
"""


@pytest.fixture(autouse=True)
def cellar_home(tmp_path, monkeypatch):
    home = tmp_path / "cellar"
    monkeypatch.setenv("WINECELLAR_HOME", str(home))
    monkeypatch.delenv("WINECELLAR_DEBUG", raising=False)
    monkeypatch.chdir(tmp_path)
    return home


@pytest.fixture
def wine_dir(tmp_path):
    bin_dir = tmp_path / "wine" / "bin"
    bin_dir.mkdir(parents=True)
    for name, body in (("wine", FAKE_WINE), ("wineserver", "#!/bin/sh\nexit 0\n")):
        (bin_dir / name).write_text(body)
        (bin_dir / name).chmod(0o755)
    return bin_dir


def test_version(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--version"])

    assert exc.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "prepare" in capsys.readouterr().out


class TestInit:
    def test_writes_parseable_template(self, tmp_path):
        assert main(["init"]) == 0

        config = load_config(tmp_path / CONFIG_FILE_NAME)
        unit = config.units["example"]
        assert unit.runtime.is_system
        assert unit.libraries["dxvk"].is_latest
        assert unit.environment.fixups == ["vcrun2015"]
        assert unit.command == ["C:\\Program Files\\Example\\example.exe"]

    def test_refuses_to_overwrite(self, tmp_path, capsys):
        (tmp_path / CONFIG_FILE_NAME).write_text("# mine\n")

        assert main(["init"]) == 1
        assert (tmp_path / CONFIG_FILE_NAME).read_text() == "# mine\n"
        assert "--force" in capsys.readouterr().err

        assert main(["init", "--force"]) == 0
        assert "[units.example]" in (tmp_path / CONFIG_FILE_NAME).read_text()


class TestPrepare:
    def test_without_config_fails(self, capsys):
        assert main(["prepare", "game"]) == 1
        assert CONFIG_FILE_NAME in capsys.readouterr().err

    def test_unknown_unit(self, tmp_path, capsys, wine_dir):
        (tmp_path / CONFIG_FILE_NAME).write_text(f'[units.game]\nruntime = {{ kind = "system", path = "{wine_dir}" }}\n')

        assert main(["prepare", "other"]) == 1
        assert "Unknown unit 'other'" in capsys.readouterr().err

    def test_json_plan_with_system_wine(self, tmp_path, capsys, cellar_home, wine_dir):
        config = tmp_path / "games" / "winecellar.toml"
        config.parent.mkdir()
        config.write_text(
            "[units.game]\n"
            'name = "Game"\n'
            'command = ["game.exe"]\n'
            f'runtime = {{ kind = "system", path = "{wine_dir}" }}\n'
            "[units.game.env]\n"
            'DXVK_HUD = "fps"\n'
        )

        assert main(["prepare", "game", "--config", str(config), "--json"]) == 0

        out = capsys.readouterr().out
        plan = json.loads(out)
        prefix = cellar_home / "prefixes" / "game"
        assert plan["prefix"] == str(prefix)
        assert plan["argv"] == [str(wine_dir / "wine"), "game.exe"]
        assert plan["env"]["DXVK_HUD"] == "fps"
        assert plan["env"]["WINEPREFIX"] == str(prefix)
        assert plan["reconcile"]["initialized"] is True
        assert (prefix / "system.reg").is_file()

    def test_human_output(self, tmp_path, capsys, wine_dir):
        (tmp_path / CONFIG_FILE_NAME).write_text(
            f'[units.game]\ncommand = ["game.exe"]\nruntime = {{ kind = "system", path = "{wine_dir}" }}\n'
        )

        assert main(["prepare", "game"]) == 0

        out = capsys.readouterr().out
        assert "Unit:    game (game)" in out
        assert "WINEPREFIX=" in out


def test_info_json(tmp_path, capsys, cellar_home):
    assert main(["info", "--json"]) == 0

    info = json.loads(capsys.readouterr().out)
    assert info["home"] == str(cellar_home)
    assert info["artifacts"] == []
    assert info["tools"] == []
    assert info["registry"]["dxvk"] == "github:doitsujin/dxvk"


def test_info_text(capsys):
    assert main(["info"]) == 0

    out = capsys.readouterr().out
    assert "No cached artifacts" in out
    assert "vkd3d-proton" in out


def test_sweep_path_without_processes(tmp_path, capsys):
    prefix = tmp_path / "prefixes" / "idle"
    prefix.mkdir(parents=True)

    assert main(["sweep", str(prefix)]) == 0
    assert "Terminated 0 process(es)" in capsys.readouterr().out
