"""
Configuration management for Scanbridge.

Loads:
- scanbridge.yml: Tool configuration (HTTP timeout, cache locations,
  analyzer plugins, external scanner command)

And derives the per-build working directories under ``.sonarqube/``.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILE_NAME = "scanbridge.yml"
ANALYSIS_CONFIG_FILE_NAME = "SonarQubeAnalysisConfig.yml"
SCANNER_HOME_ENV = "SONAR_USER_HOME"


@dataclass
class HttpConfig:
    """Outbound HTTP settings."""
    timeout: float = 100.0  # seconds


@dataclass
class CacheConfig:
    """Local cache locations."""
    plugin_cache_dir: str | None = None  # Defaults to {tempdir}/.sonarqube/resources
    scanner_home: str | None = None  # Defaults to $SONAR_USER_HOME or ~/.sonar

    def get_plugin_cache_dir(self) -> Path:
        if self.plugin_cache_dir:
            return Path(self.plugin_cache_dir).expanduser()
        return Path(tempfile.gettempdir()) / ".sonarqube" / "resources"

    def get_scanner_home(self) -> Path:
        if self.scanner_home:
            return Path(self.scanner_home).expanduser()
        env_home = os.environ.get(SCANNER_HOME_ENV)
        if env_home:
            return Path(env_home).expanduser()
        return Path.home() / ".sonar"


@dataclass
class AnalyzerPlugin:
    """Server plugin that provides the analyzer for one language."""
    language: str
    plugin_key: str
    plugin_version: str
    static_resource_name: str


def _default_analyzers() -> list[AnalyzerPlugin]:
    return [
        AnalyzerPlugin("cs", "csharp", "9.0.0", "SonarAnalyzer-csharp.zip"),
        AnalyzerPlugin("vbnet", "vbnet", "9.0.0", "SonarAnalyzer-vbnet.zip"),
    ]


@dataclass
class ScannerCommandConfig:
    """External analysis executable."""
    command: str = "sonar-scanner"
    jre_filename: str | None = None
    jre_sha: str | None = None
    jre_java_path: str | None = None
    jre_url: str | None = None


@dataclass
class ScannerConfig:
    """Complete Scanbridge configuration."""
    http: HttpConfig = field(default_factory=HttpConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    analyzers: list[AnalyzerPlugin] = field(default_factory=_default_analyzers)
    scanner: ScannerCommandConfig = field(default_factory=ScannerCommandConfig)

    def get_analyzer(self, language: str) -> AnalyzerPlugin | None:
        for analyzer in self.analyzers:
            if analyzer.language == language:
                return analyzer
        return None

    @classmethod
    def load(cls, root: Path) -> "ScannerConfig":
        """Load configuration from a directory; missing file means defaults."""
        config_path = Path(root) / CONFIG_FILE_NAME
        if not config_path.exists():
            return cls()
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        return cls._parse(data)

    @classmethod
    def _parse(cls, data: dict[str, Any]) -> "ScannerConfig":
        config = cls()

        http_data = data.get("http", {})
        config.http = HttpConfig(timeout=float(http_data.get("timeout", 100.0)))

        cache_data = data.get("cache", {})
        config.cache = CacheConfig(
            plugin_cache_dir=cache_data.get("plugin_cache_dir"),
            scanner_home=cache_data.get("scanner_home"),
        )

        analyzers_data = data.get("analyzers")
        if analyzers_data:
            config.analyzers = [
                AnalyzerPlugin(
                    language=language,
                    plugin_key=item.get("plugin_key", language),
                    plugin_version=str(item.get("plugin_version", "")),
                    static_resource_name=item.get("static_resource_name", ""),
                )
                for language, item in analyzers_data.items()
                if isinstance(item, dict)
            ]

        scanner_data = data.get("scanner", {})
        config.scanner = ScannerCommandConfig(
            command=scanner_data.get("command", "sonar-scanner"),
            jre_filename=scanner_data.get("jre_filename"),
            jre_sha=scanner_data.get("jre_sha"),
            jre_java_path=scanner_data.get("jre_java_path"),
            jre_url=scanner_data.get("jre_url"),
        )
        return config


@dataclass
class BuildSettings:
    """Working directories for one build, all under ``{base}/.sonarqube``."""
    base_dir: Path
    sources_dir: Path

    @classmethod
    def from_directory(cls, base_dir: Path | None = None) -> "BuildSettings":
        base = Path(base_dir or Path.cwd()).resolve()
        return cls(base_dir=base, sources_dir=base)

    @property
    def sonarqube_dir(self) -> Path:
        return self.base_dir / ".sonarqube"

    @property
    def config_dir(self) -> Path:
        return self.sonarqube_dir / "conf"

    @property
    def output_dir(self) -> Path:
        return self.sonarqube_dir / "out"

    @property
    def bin_dir(self) -> Path:
        return self.sonarqube_dir / "bin"

    @property
    def working_dir(self) -> Path:
        return self.base_dir

    @property
    def analysis_config_path(self) -> Path:
        return self.config_dir / ANALYSIS_CONFIG_FILE_NAME


def ensure_empty_directories(*paths: Path) -> None:
    """Create the directories, removing any previous content."""
    for path in paths:
        if path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True, exist_ok=True)
