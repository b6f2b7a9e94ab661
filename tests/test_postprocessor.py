from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock, patch

from scanbridge.analysis_config import SERVER_SCOPE, AnalysisConfig
from scanbridge.config import ScannerCommandConfig, ScannerConfig
from scanbridge.jre import JreCacheFailure, JreCacheHit, JreCacheMiss
from scanbridge.postprocessor import build_project_properties, execute, resolve_java
from scanbridge.properties import Property
from scanbridge.runner import ProcessResult


def _snapshot(tmp_path) -> AnalysisConfig:
    config = AnalysisConfig(
        sonar_output_dir=str(tmp_path / "out"),
        sonar_scanner_working_directory=str(tmp_path),
        sources_directory=str(tmp_path),
        server_url="http://server",
        project_key="proj",
        project_version="2.0",
    )
    config.add_setting("sonar.exclusions", "server", SERVER_SCOPE)
    config.add_setting("sonar.exclusions", "local")
    return config


def test_project_properties_precedence(tmp_path):
    properties = build_project_properties(_snapshot(tmp_path))
    assert properties["sonar.exclusions"] == "local"
    assert properties["sonar.projectKey"] == "proj"
    assert properties["sonar.projectVersion"] == "2.0"
    assert "sonar.projectName" not in properties


def test_project_properties_never_sensitive(tmp_path):
    snapshot = _snapshot(tmp_path)
    # Bypass add_setting to simulate a hand-edited snapshot
    snapshot.local_settings.append(Property("sonar.login", "admin"))
    assert "sonar.login" not in build_project_properties(snapshot)


def test_execute_runs_scanner_with_token_in_environment(tmp_path):
    config = ScannerConfig(scanner=ScannerCommandConfig(command="scanner"))
    with patch("scanbridge.postprocessor.run_external_tool", return_value=ProcessResult(0)) as run, \
            patch.dict("os.environ", {"SONAR_TOKEN": "t0ken"}):
        result = execute(_snapshot(tmp_path), config)

    assert result.succeeded
    args = run.call_args.args[0]
    properties_file = tmp_path / "out" / "sonar-project.properties"
    assert args == ["scanner", f"-Dproject.settings={properties_file}"]
    assert run.call_args.kwargs["env"] == {"SONAR_TOKEN": "t0ken"}
    assert "t0ken" not in properties_file.read_text()


def test_resolve_java_not_configured():
    assert resolve_java(ScannerConfig()) is None


def test_resolve_java_states(tmp_path):
    config = ScannerConfig(scanner=ScannerCommandConfig(jre_filename="jre.zip", jre_sha="abc", jre_java_path="bin/java"))
    cache = Mock()

    cache.is_jre_cached.return_value = JreCacheHit(Path("/jre/bin/java"))
    assert resolve_java(config, cache) == Path("/jre/bin/java")

    cache.is_jre_cached.return_value = JreCacheMiss()
    assert resolve_java(config, cache) is None

    cache.is_jre_cached.return_value = JreCacheFailure("broken")
    assert resolve_java(config, cache) is None


def test_execute_passes_cached_java(tmp_path):
    config = ScannerConfig(scanner=ScannerCommandConfig(
        command="scanner", jre_filename="jre.zip", jre_sha="abc", jre_java_path="bin/java",
    ))
    cache = Mock()
    cache.is_jre_cached.return_value = JreCacheHit(Path("/jre/bin/java"))

    with patch("scanbridge.postprocessor.run_external_tool", return_value=ProcessResult(2)) as run:
        result = execute(_snapshot(tmp_path), config, cache)

    assert not result.succeeded
    assert run.call_args.args[0][-1] == "-Dsonar.scanner.javaExePath=/jre/bin/java"
