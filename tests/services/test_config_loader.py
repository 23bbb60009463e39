import pytest

from cnvrgctl.errors import CnvrgctlError
from cnvrgctl.services.config_loader import ConfigLoader


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".cnvrgctl.yml"
    config_file.write_text(
        "namespace: cnvrg\nscale_timeout: 60\nworkloads:\n  - app\n  - sidekiq\n",
        encoding="utf-8",
    )

    loader = ConfigLoader()
    loaded = loader.load(str(config_file))

    assert loaded["namespace"] == "cnvrg"
    assert loaded["scale_timeout"] == 60
    assert loaded["workloads"] == ["app", "sidekiq"]


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".cnvrgctl.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    loader = ConfigLoader()

    with pytest.raises(CnvrgctlError, match="Unknown configuration keys"):
        loader.load(str(config_file))


def test_config_loader_rejects_non_list_workloads(tmp_path):
    config_file = tmp_path / ".cnvrgctl.yml"
    config_file.write_text("workloads: app\n", encoding="utf-8")

    with pytest.raises(CnvrgctlError, match="workloads"):
        ConfigLoader().load(str(config_file))


def test_config_loader_requires_explicit_file_to_exist(tmp_path):
    with pytest.raises(CnvrgctlError, match="Config file not found"):
        ConfigLoader().load(str(tmp_path / "missing.yml"))


def test_config_loader_falls_back_to_default_locations(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    (home / ".cnvrgctl.yaml").write_text("namespace: from-home\n", encoding="utf-8")
    workdir = tmp_path / "work"
    workdir.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(workdir)

    assert ConfigLoader().load(None) == {"namespace": "from-home"}

    (workdir / ".cnvrgctl.yml").write_text("namespace: from-cwd\n", encoding="utf-8")

    assert ConfigLoader().load(None) == {"namespace": "from-cwd"}


def test_config_loader_without_any_file_returns_empty_mapping(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)

    assert ConfigLoader().load(None) == {}
