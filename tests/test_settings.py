"""Tests for settings loading."""
from pathlib import Path

import pytest

from riceify.config import RiceifySettings, load_settings
from riceify.engine import ValidationError


SETTINGS_YAML = """
home: {home}
workers: 2
profiles:
  dark-theme:
    files:
      - ~/.config/kitty/kitty.conf
      - ~/.config/waybar/*.css
    dependencies:
      - from: ~/.config/waybar/style.css.tmpl
        to: ~/.config/waybar/style.css
  minimal:
    files: ~/.bashrc
"""


class TestRiceifySettings:
    """Tests for RiceifySettings."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in ("RICEIFY_HOME", "RICEIFY_WORKERS", "RICEIFY_CONFIG"):
            monkeypatch.delenv(var, raising=False)

    def test_defaults(self):
        """Empty settings derive store and cache paths from home."""
        settings = RiceifySettings.from_dict({"home": "/data/rice"})

        assert settings.resolved_store_dir == Path("/data/rice/store")
        assert settings.resolved_cache_file == Path("/data/rice/cache/hashes.json")
        assert settings.workers is None
        assert settings.profiles == {}

    def test_load_from_file(self, tmp_path):
        """Profiles, dependencies and a bare-string file list are parsed."""
        path = tmp_path / "riceify.yaml"
        path.write_text(SETTINGS_YAML.format(home=tmp_path))

        settings = load_settings(path)

        dark = settings.get_profile("dark-theme")
        assert settings.workers == 2
        assert len(dark.files) == 2
        assert dark.dependencies[0].source == "~/.config/waybar/style.css.tmpl"
        assert dark.dependencies[0].target == "~/.config/waybar/style.css"
        assert settings.get_profile("minimal").files == ["~/.bashrc"]

    def test_dependency_field_names(self):
        """Dependencies accept source/target as well as from/to."""
        settings = RiceifySettings.from_dict({
            "profiles": {"p": {"files": ["/a", "/b"], "dependencies": [{"source": "/a", "target": "/b"}]}},
        })

        assert settings.get_profile("p").dependencies[0].target == "/b"

    def test_home_expands_user(self):
        settings = RiceifySettings.from_dict({"home": "~/rice"})

        assert settings.home == Path.home() / "rice"

    def test_env_overrides(self, monkeypatch, tmp_path):
        """RICEIFY_HOME and RICEIFY_WORKERS win over the file."""
        monkeypatch.setenv("RICEIFY_HOME", str(tmp_path / "env-home"))
        monkeypatch.setenv("RICEIFY_WORKERS", "7")

        settings = RiceifySettings.from_dict({"home": "/ignored", "workers": 1})

        assert settings.home == tmp_path / "env-home"
        assert settings.workers == 7

    def test_unknown_profile(self):
        """Asking for an undeclared profile is a ValidationError."""
        settings = RiceifySettings.from_dict({"profiles": {"a": {"files": ["/x"]}}})

        with pytest.raises(ValidationError) as exc:
            settings.get_profile("b")

        assert "Declared: a" in str(exc.value)

    def test_invalid_values(self):
        """Pydantic errors surface as ValidationError with every problem listed."""
        with pytest.raises(ValidationError) as exc:
            RiceifySettings.from_dict({"workers": 0, "cache_max_entries": "lots"})

        assert len(exc.value.errors) == 2

    def test_settings_are_frozen(self):
        settings = RiceifySettings.from_dict({})

        with pytest.raises(Exception):
            settings.workers = 3

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "riceify.yaml"
        path.write_text("profiles: [unclosed")

        with pytest.raises(ValidationError):
            load_settings(path)

    def test_no_file_uses_defaults(self, monkeypatch, tmp_path):
        """Without any settings file the defaults apply."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setattr("riceify.config.settings.DEFAULT_HOME", tmp_path / ".riceify")

        settings = load_settings()

        assert settings.profiles == {}
