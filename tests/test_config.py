from pathlib import Path

import pytest

from librarian.config import Settings, _merge_layers, load_config, resolve_host, resolve_settings
from librarian.connection import SSHConfig
from librarian.exceptions import ConfigurationError

pytestmark = [pytest.mark.unit]


class TestMergeLayers:
    def test_defaults_merge_key_by_key(self):
        global_cfg = {"defaults": {"scp_timeout": 10.0, "queue_size": 8}}
        merged = _merge_layers(global_cfg, {"defaults": {"scp_timeout": 2.0}})
        assert merged["defaults"] == {"scp_timeout": 2.0, "queue_size": 8}

    def test_project_host_replaces_global_host(self):
        global_cfg = {"hosts": {"db": {"host": "db.internal", "password": "from-global"}}}
        project_cfg = {"hosts": {"db": {"host": "db.internal", "key_path": "/keys/db"}}}
        merged = _merge_layers(global_cfg, project_cfg)
        assert merged["hosts"]["db"] == {"host": "db.internal", "key_path": "/keys/db"}

    def test_hosts_from_both_layers(self):
        merged = _merge_layers({"hosts": {"a": {"host": "a"}}}, {"hosts": {"b": {"host": "b"}}})
        assert merged == {"defaults": {}, "hosts": {"a": {"host": "a"}, "b": {"host": "b"}}}


class TestLoadConfig:
    def test_no_files_returns_empty_sections(self, tmp_path: Path):
        result = load_config(project_dir=tmp_path / "nope", global_path=tmp_path / "nope.toml")
        assert result == {"defaults": {}, "hosts": {}}

    def test_project_overrides_global(self, tmp_path: Path):
        global_toml = tmp_path / "defaults.toml"
        global_toml.write_text("[defaults]\nscp_timeout = 10.0\nqueue_size = 8\n")
        project = tmp_path / "project"
        project.mkdir()
        (project / "librarian.toml").write_text("[defaults]\nscp_timeout = 2.0\n")
        result = load_config(project_dir=project, global_path=global_toml)
        assert result["defaults"] == {"scp_timeout": 2.0, "queue_size": 8}

    def test_invalid_toml(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text("[defaults\n")
        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            load_config(project_dir=tmp_path, global_path=tmp_path / "nope.toml")

    def test_unknown_section(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text("[default]\nscp_timeout = 1.0\n")
        with pytest.raises(ConfigurationError, match="Unknown sections in .*: default"):
            load_config(project_dir=tmp_path, global_path=tmp_path / "nope.toml")

    def test_host_must_be_table(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text('[hosts]\nbuild = "build.example.com"\n')
        with pytest.raises(ConfigurationError, match="hosts.build .* must be a table"):
            load_config(project_dir=tmp_path, global_path=tmp_path / "nope.toml")

    def test_global_path_from_environment(self, tmp_path: Path, monkeypatch):
        global_toml = tmp_path / "ci.toml"
        global_toml.write_text('[hosts.ci]\nhost = "ci.example.com"\n')
        monkeypatch.setenv("LIBRARIAN_CONFIG", str(global_toml))
        assert load_config(project_dir=tmp_path)["hosts"] == {"ci": {"host": "ci.example.com"}}


class TestResolveSettings:
    def test_defaults_when_empty(self, tmp_path: Path):
        assert resolve_settings(project_dir=tmp_path, global_path=tmp_path / "nope.toml") == Settings()

    def test_values(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text("[defaults]\ndata_timeout = 30.0\nchunk_size = 4096\n")
        settings = resolve_settings(project_dir=tmp_path, global_path=tmp_path / "nope.toml")
        assert settings.data_timeout == 30.0
        assert settings.chunk_size == 4096

    def test_zero_timeout_means_forever(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text("[defaults]\ndata_timeout = 0\n")
        settings = resolve_settings(project_dir=tmp_path, global_path=tmp_path / "nope.toml")
        assert settings.data_timeout is None

    def test_unknown_key(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text("[defaults]\ntimeout = 3\n")
        with pytest.raises(ConfigurationError, match="Unknown keys in \\[defaults\\]: timeout"):
            resolve_settings(project_dir=tmp_path, global_path=tmp_path / "nope.toml")

    @pytest.mark.parametrize("line", ["scp_timeout = -1", "queue_size = 0", "data_timeout = -5"])
    def test_invalid_values(self, tmp_path: Path, line):
        (tmp_path / "librarian.toml").write_text(f"[defaults]\n{line}\n")
        with pytest.raises(ConfigurationError):
            resolve_settings(project_dir=tmp_path, global_path=tmp_path / "nope.toml")


class TestResolveHost:
    def test_host(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text(
            '[hosts.build]\nhost = "build.example.com"\nuser = "ci"\nport = 2222\n'
            'key_path = "~/.ssh/id_ed25519"\nauth_retry_timeout = 30.0\n'
        )
        config = resolve_host("build", project_dir=tmp_path, global_path=tmp_path / "nope.toml")
        assert config == SSHConfig(
            host="build.example.com",
            user="ci",
            port=2222,
            key_path=str(Path("~/.ssh/id_ed25519").expanduser()),
            auth_retry_timeout=30.0,
        )

    def test_unknown_label_lists_available(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text('[hosts.a]\nhost = "a"\n[hosts.b]\nhost = "b"\n')
        with pytest.raises(KeyError, match="Available: a, b"):
            resolve_host("c", project_dir=tmp_path, global_path=tmp_path / "nope.toml")

    def test_missing_host_field(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text('[hosts.a]\nuser = "root"\n')
        with pytest.raises(ConfigurationError, match="missing 'host'"):
            resolve_host("a", project_dir=tmp_path, global_path=tmp_path / "nope.toml")

    def test_unknown_field(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text('[hosts.a]\nhost = "a"\nhostname = "b"\n')
        with pytest.raises(ConfigurationError, match="Unknown keys in \\[hosts.a\\]: hostname"):
            resolve_host("a", project_dir=tmp_path, global_path=tmp_path / "nope.toml")

    def test_password_not_in_repr(self, tmp_path: Path):
        (tmp_path / "librarian.toml").write_text('[hosts.a]\nhost = "a"\npassword = "hunter2"\n')
        config = resolve_host("a", project_dir=tmp_path, global_path=tmp_path / "nope.toml")
        assert "hunter2" not in repr(config)
