from __future__ import annotations

import json
import zipfile
from pathlib import Path
from unittest.mock import Mock, patch

import yaml

from scanbridge.args import ProcessedArgs
from scanbridge.config import BuildSettings, CacheConfig, ScannerConfig
from scanbridge.preprocessor import (
    PreProcessor,
    create_downloader,
    fetch_all_language_rules,
)
from scanbridge.properties import Property, PropertySet, ResolvedProperties
from scanbridge.server import ActiveRule, AnalysisError, SensorCacheEntry
from scanbridge.web import WebRequestError


def _args(*props: tuple[str, str]) -> ProcessedArgs:
    cmdline = PropertySet([Property("sonar.host.url", "http://server")] + [Property(k, v) for k, v in props])
    return ProcessedArgs("proj", properties=ResolvedProperties(cmdline=cmdline))


def _server():
    server = Mock()
    server.is_server_license_valid.return_value = True
    server.download_properties.return_value = {"sonar.exclusions": "gen/**"}
    server.get_all_languages.return_value = ["cs", "java"]
    server.try_get_quality_profile.return_value = (True, "qp-cs")
    server.get_active_rules.return_value = [ActiveRule("csharpsquid", "S100")]
    server.get_inactive_rules.return_value = ["csharpsquid:S200"]
    server.download_cache.return_value = []
    server.version_string = "9.9.0"

    def download(plugin_key, resource_name, target_dir):
        with zipfile.ZipFile(Path(target_dir) / resource_name, "w") as archive:
            archive.writestr("Analyzer.dll", b"dll")
        return True

    server.try_download_embedded_file.side_effect = download
    return server


def _config(tmp_path) -> ScannerConfig:
    return ScannerConfig(cache=CacheConfig(plugin_cache_dir=str(tmp_path / "plugins")))


def test_preprocessor_writes_snapshot_and_rules(tmp_path):
    server = _server()
    build_settings = BuildSettings.from_directory(tmp_path / "build")
    processor = PreProcessor(_config(tmp_path), server_factory=lambda args: server)

    snapshot = processor.execute(_args(), build_settings)

    assert snapshot is not None
    assert build_settings.analysis_config_path.exists()
    assert [p.id for p in snapshot.server_settings] == ["sonar.exclusions"]
    assert [a.language for a in snapshot.analyzer_settings] == ["cs"]

    analyzer = snapshot.analyzer_settings[0]
    assert analyzer.analyzer_assemblies == [str(tmp_path / "plugins" / "csharp" / "9.0.0" / "Analyzer.dll")]
    rules = yaml.safe_load(Path(analyzer.ruleset_path).read_text())
    assert rules["profile_key"] == "qp-cs"
    assert rules["active_rules"][0]["rule_key"] == "S100"
    assert rules["inactive_rules"] == ["csharpsquid:S200"]
    server.close.assert_called_once()


def test_preprocessor_skips_language_without_profile(tmp_path):
    server = _server()
    server.try_get_quality_profile.return_value = (False, None)
    processor = PreProcessor(_config(tmp_path), server_factory=lambda args: server)

    snapshot = processor.execute(_args(), BuildSettings.from_directory(tmp_path))

    assert snapshot.analyzer_settings == []
    server.try_download_embedded_file.assert_not_called()


def test_preprocessor_fails_on_invalid_license(tmp_path):
    server = _server()
    server.is_server_license_valid.return_value = False
    processor = PreProcessor(_config(tmp_path), server_factory=lambda args: server)

    assert processor.execute(_args(), BuildSettings.from_directory(tmp_path)) is None
    server.download_properties.assert_not_called()


def test_preprocessor_fails_when_server_unavailable(tmp_path):
    processor = PreProcessor(_config(tmp_path), server_factory=lambda args: None)
    assert processor.execute(_args(), BuildSettings.from_directory(tmp_path)) is None


def test_preprocessor_analysis_error_is_failure(tmp_path, caplog):
    server = _server()
    server.try_get_quality_profile.side_effect = AnalysisError("Cannot download quality profile.")
    processor = PreProcessor(_config(tmp_path), server_factory=lambda args: server)

    assert processor.execute(_args(), BuildSettings.from_directory(tmp_path)) is None
    assert "Cannot download quality profile" in caplog.text
    server.close.assert_called_once()


def test_preprocessor_writes_cache_digests(tmp_path):
    server = _server()
    server.download_cache.return_value = [SensorCacheEntry("a.cs", b"data")]
    build_settings = BuildSettings.from_directory(tmp_path)

    PreProcessor(_config(tmp_path), server_factory=lambda args: server).execute(_args(), build_settings)

    cache = yaml.safe_load((build_settings.config_dir / "PullRequestCache.yml").read_text())
    assert list(cache) == ["a.cs"]
    assert len(cache["a.cs"]) == 64


def test_fetch_all_language_rules_keeps_order():
    server = _server()
    server.try_get_quality_profile.side_effect = lambda key, branch, org, language: (True, f"qp-{language}")

    results = fetch_all_language_rules(server, _args(), ["cs", "vbnet"])

    assert [r.language for r in results] == ["cs", "vbnet"]
    assert [r.profile_key for r in results] == ["qp-cs", "qp-vbnet"]


def test_create_downloader_uses_token_as_username():
    with patch("scanbridge.preprocessor.WebClientDownloader") as downloader_cls:
        create_downloader(_args(("sonar.token", "squ_abc")), 30.0)

    kwargs = downloader_cls.call_args.kwargs
    assert downloader_cls.call_args.args == ("http://server",)
    assert kwargs["username"] == "squ_abc"
    assert kwargs["password"] is None
    assert kwargs["timeout"] == 30.0


def test_preprocessor_plugin_cache_not_creatable(tmp_path, caplog):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    server = _server()
    config = ScannerConfig(cache=CacheConfig(plugin_cache_dir=str(blocker / "plugins")))
    processor = PreProcessor(config, server_factory=lambda args: server)

    assert processor.execute(_args(), BuildSettings.from_directory(tmp_path / "build")) is None
    assert str(blocker / "plugins") in caplog.text
    server.close.assert_called_once()


def test_preprocessor_corrupt_plugin_archive(tmp_path, caplog):
    server = _server()

    def download(plugin_key, resource_name, target_dir):
        (Path(target_dir) / resource_name).write_bytes(b"<html>proxy login</html>")
        return True

    server.try_download_embedded_file.side_effect = download
    processor = PreProcessor(_config(tmp_path), server_factory=lambda args: server)

    assert processor.execute(_args(), BuildSettings.from_directory(tmp_path)) is None
    assert "not a valid zip archive" in caplog.text


def test_preprocessor_malformed_server_response(tmp_path, caplog):
    server = _server()
    server.get_all_languages.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
    processor = PreProcessor(_config(tmp_path), server_factory=lambda args: server)

    assert processor.execute(_args(), BuildSettings.from_directory(tmp_path)) is None
    assert "unexpected response" in caplog.text
    server.close.assert_called_once()


def test_preprocessor_license_server_error(tmp_path, caplog):
    server = _server()
    server.is_server_license_valid.side_effect = WebRequestError("Server error: 503 - Service Unavailable", 503)
    processor = PreProcessor(_config(tmp_path), server_factory=lambda args: server)

    assert processor.execute(_args(), BuildSettings.from_directory(tmp_path)) is None
    assert "503" in caplog.text
    assert "not licensed" not in caplog.text


def test_preprocessor_unreadable_client_certificate(tmp_path, caplog):
    def factory(args):
        raise FileNotFoundError(2, "No such file or directory", "/certs/client.pem")

    processor = PreProcessor(_config(tmp_path), server_factory=factory)

    assert processor.execute(_args(), BuildSettings.from_directory(tmp_path)) is None
    assert "client certificate could not be loaded" in caplog.text
