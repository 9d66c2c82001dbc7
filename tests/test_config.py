"""Tests for ServerSettings defaults, environment loading and validation.

Run:
    pytest tests/test_config.py -v
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from scriptserve.config import ServerSettings
from scriptserve.constants import DEFAULT_PREFIX


class TestDefaults:
    def test_defaults(self):
        settings = ServerSettings()
        assert settings.wwwroot == Path.cwd() / "wwwroot"
        assert settings.prefixes == [DEFAULT_PREFIX]
        assert settings.asset_dirs == ["assets"]
        assert settings.websocket is True
        assert settings.disable_server_script is False
        assert settings.transversal is False
        assert settings.script_extensions == [".lua"]
        assert settings.otel_exporter == "none"

    def test_derived_paths(self, tmp_path):
        settings = ServerSettings(wwwroot=tmp_path, asset_dirs=["assets", "/public/"])
        assert settings.script_root == tmp_path / "server"
        assert settings.asset_roots == [tmp_path / "assets", tmp_path / "public"]


class TestFromEnv:
    def test_parses_lists_bools_and_mime_pairs(self, tmp_path):
        settings = ServerSettings.from_env(
            {
                "SCRIPTSERVE_WWWROOT": str(tmp_path),
                "SCRIPTSERVE_PREFIXES": "http://localhost:8080/, http://+:9000/",
                "SCRIPTSERVE_WEBSOCKET": "false",
                "SCRIPTSERVE_TRANSVERSAL": "1",
                "SCRIPTSERVE_MIME_ADD": ".foo=text/x-foo, .bar = application/x-bar",
                "SCRIPTSERVE_MIME_REMOVE": ".exe,.dll",
                "SCRIPTSERVE_OTEL_EXPORTER": "Console",
            }
        )
        assert settings.wwwroot == tmp_path
        assert settings.prefixes == ["http://localhost:8080/", "http://+:9000/"]
        assert settings.websocket is False
        assert settings.transversal is True
        assert settings.mime_add == {".foo": "text/x-foo", ".bar": "application/x-bar"}
        assert settings.mime_remove == [".exe", ".dll"]
        assert settings.otel_exporter == "console"

    def test_empty_values_are_ignored(self):
        settings = ServerSettings.from_env({"SCRIPTSERVE_PREFIXES": "", "OTHER": "x"})
        assert settings.prefixes == [DEFAULT_PREFIX]


class TestValidation:
    def test_asset_dir_cannot_be_server_dir(self):
        with pytest.raises(ValidationError, match="server script directory"):
            ServerSettings(asset_dirs=["assets", "Server"])

    def test_extension_needs_leading_dot(self):
        with pytest.raises(ValidationError, match="must start with"):
            ServerSettings(script_extensions=["lua"])

    def test_bad_mime_pair(self):
        with pytest.raises(ValidationError, match="invalid MIME mapping"):
            ServerSettings.from_env({"SCRIPTSERVE_MIME_ADD": ".foo"})

    def test_unknown_exporter(self):
        with pytest.raises(ValidationError, match="unknown exporter"):
            ServerSettings(otel_exporter="zipkin")

    def test_prefix_list_cannot_be_empty(self):
        with pytest.raises(ValidationError, match="at least one"):
            ServerSettings(prefixes=[])
