"""
The analysis configuration snapshot.

Written once by ``begin`` and read back verbatim by ``end``. Sensitive
properties never reach it: every setting goes through
``AnalysisConfig.add_setting``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from .args import ProcessedArgs
from .config import BuildSettings
from .properties import (
    Property,
    SonarProperties,
    is_secured_server_property,
    is_sensitive_property,
)

logger = logging.getLogger(__name__)

SERVER_SCOPE = "server"
LOCAL_SCOPE = "local"


@dataclass
class AnalyzerSettings:
    """Rules and analyzer files for one language."""
    language: str
    ruleset_path: str
    analyzer_assemblies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "ruleset_path": self.ruleset_path,
            "analyzer_assemblies": list(self.analyzer_assemblies),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalyzerSettings":
        return cls(
            language=data["language"],
            ruleset_path=data["ruleset_path"],
            analyzer_assemblies=list(data.get("analyzer_assemblies") or []),
        )


def _properties_to_list(properties: Iterable[Property]) -> list[dict[str, str]]:
    return [{"id": p.id, "value": p.value} for p in properties]


def _properties_from_list(items: list[dict[str, Any]] | None) -> list[Property]:
    return [Property(id=item["id"], value=str(item["value"])) for item in items or []]


@dataclass
class AnalysisConfig:
    """Everything the post-processor needs, minus credentials."""
    sonar_config_dir: str = ""
    sonar_output_dir: str = ""
    sonar_bin_dir: str = ""
    sonar_scanner_working_directory: str = ""
    sources_directory: str = ""
    server_url: str = ""
    server_version: str = ""
    project_key: str = ""
    project_version: str | None = None
    project_name: str | None = None
    properties_file_path: str | None = None
    server_settings: list[Property] = field(default_factory=list)
    local_settings: list[Property] = field(default_factory=list)
    analyzer_settings: list[AnalyzerSettings] = field(default_factory=list)

    def add_setting(self, key: str, value: str, scope: str = LOCAL_SCOPE) -> bool:
        """
        Record a setting unless it is sensitive.

        Server settings ending in ``.secured`` are dropped as well.
        Returns True if the setting was recorded.
        """
        if is_sensitive_property(key):
            logger.debug("Not storing sensitive setting '%s'", key)
            return False
        if scope == SERVER_SCOPE:
            if is_secured_server_property(key):
                logger.debug("Not storing secured server setting '%s'", key)
                return False
            self.server_settings.append(Property(key, value))
        elif scope == LOCAL_SCOPE:
            self.local_settings.append(Property(key, value))
        else:
            raise ValueError(f"Unknown setting scope: {scope}")
        return True

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        """Local settings win over server settings."""
        for source in (self.local_settings, self.server_settings):
            for prop in source:
                if prop.id == key:
                    return prop.value
        return default

    def to_dict(self) -> dict[str, Any]:
        return {
            "sonar_config_dir": self.sonar_config_dir,
            "sonar_output_dir": self.sonar_output_dir,
            "sonar_bin_dir": self.sonar_bin_dir,
            "sonar_scanner_working_directory": self.sonar_scanner_working_directory,
            "sources_directory": self.sources_directory,
            "server_url": self.server_url,
            "server_version": self.server_version,
            "project_key": self.project_key,
            "project_version": self.project_version,
            "project_name": self.project_name,
            "properties_file_path": self.properties_file_path,
            "server_settings": _properties_to_list(self.server_settings),
            "local_settings": _properties_to_list(self.local_settings),
            "analyzer_settings": [s.to_dict() for s in self.analyzer_settings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisConfig":
        return cls(
            sonar_config_dir=data.get("sonar_config_dir", ""),
            sonar_output_dir=data.get("sonar_output_dir", ""),
            sonar_bin_dir=data.get("sonar_bin_dir", ""),
            sonar_scanner_working_directory=data.get("sonar_scanner_working_directory", ""),
            sources_directory=data.get("sources_directory", ""),
            server_url=data.get("server_url", ""),
            server_version=data.get("server_version", ""),
            project_key=data.get("project_key", ""),
            project_version=data.get("project_version"),
            project_name=data.get("project_name"),
            properties_file_path=data.get("properties_file_path"),
            server_settings=_properties_from_list(data.get("server_settings")),
            local_settings=_properties_from_list(data.get("local_settings")),
            analyzer_settings=[AnalyzerSettings.from_dict(s) for s in data.get("analyzer_settings") or []],
        )

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False, allow_unicode=True)

    @classmethod
    def load(cls, path: Path) -> "AnalysisConfig":
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)


def generate_config(
    args: ProcessedArgs,
    build_settings: BuildSettings,
    server_properties: dict[str, str],
    analyzer_settings: list[AnalyzerSettings],
    server_version: str,
) -> AnalysisConfig:
    """Build the snapshot and write it to the build's config directory."""
    config = AnalysisConfig(
        sonar_config_dir=str(build_settings.config_dir),
        sonar_output_dir=str(build_settings.output_dir),
        sonar_bin_dir=str(build_settings.bin_dir),
        sonar_scanner_working_directory=str(build_settings.working_dir),
        sources_directory=str(build_settings.sources_dir),
        server_url=args.server_url,
        server_version=server_version,
        project_key=args.project_key,
        project_version=args.project_version,
        project_name=args.project_name,
        properties_file_path=str(args.properties_file_path) if args.properties_file_path else None,
        analyzer_settings=list(analyzer_settings),
    )

    for key, value in server_properties.items():
        config.add_setting(key, value, SERVER_SCOPE)

    for prop in args.all_properties():
        config.add_setting(prop.id, prop.value, LOCAL_SCOPE)
    if args.organization and not args.properties.has(SonarProperties.ORGANIZATION):
        config.add_setting(SonarProperties.ORGANIZATION, args.organization, LOCAL_SCOPE)

    config.save(build_settings.analysis_config_path)
    logger.debug("Analysis configuration written to %s", build_settings.analysis_config_path)
    return config
