"""
The ``end`` step: turn the snapshot into scanner input and run the scanner.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .analysis_config import AnalysisConfig
from .config import ScannerConfig
from .jre import JreCache, JreCacheFailure, JreCacheHit, JreDescriptor
from .properties import SonarProperties, is_sensitive_property
from .runner import ProcessResult, run_external_tool

logger = logging.getLogger(__name__)

PROJECT_PROPERTIES_FILE_NAME = "sonar-project.properties"
TOKEN_ENV_VAR = "SONAR_TOKEN"
JAVA_EXE_PROPERTY = "sonar.scanner.javaExePath"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def build_project_properties(config: AnalysisConfig) -> dict[str, str]:
    """Server settings, overridden by local settings, overridden by the project identity."""
    properties: dict[str, str] = {}
    for prop in config.server_settings:
        properties[prop.id] = prop.value
    for prop in config.local_settings:
        properties[prop.id] = prop.value

    properties[SonarProperties.HOST_URL] = config.server_url
    properties[SonarProperties.PROJECT_KEY] = config.project_key
    if config.project_name:
        properties[SonarProperties.PROJECT_NAME] = config.project_name
    if config.project_version:
        properties[SonarProperties.PROJECT_VERSION] = config.project_version
    properties["sonar.projectBaseDir"] = config.sources_directory
    properties["sonar.working.directory"] = str(Path(config.sonar_output_dir) / ".sonar")

    return {k: v for k, v in properties.items() if not is_sensitive_property(k)}


def write_project_properties(config: AnalysisConfig) -> Path:
    path = Path(config.sonar_output_dir) / PROJECT_PROPERTIES_FILE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"{key}={_escape(value)}" for key, value in build_project_properties(config).items()]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    logger.debug("Scanner properties written to %s", path)
    return path


def resolve_java(scanner_config: ScannerConfig, jre_cache: JreCache | None = None) -> Path | None:
    """
    Java executable from the JRE cache, if one is configured and cached.

    A miss or failure is not fatal: the scanner falls back to its own java.
    """
    scanner = scanner_config.scanner
    if not (scanner.jre_filename and scanner.jre_sha and scanner.jre_java_path):
        return None

    descriptor = JreDescriptor(scanner.jre_filename, scanner.jre_sha, scanner.jre_java_path)
    result = (jre_cache or JreCache()).is_jre_cached(scanner_config.cache.get_scanner_home(), descriptor)
    if isinstance(result, JreCacheHit):
        logger.debug("Using cached JRE: %s", result.executable_path)
        return result.executable_path
    if isinstance(result, JreCacheFailure):
        logger.warning("JRE cache: %s", result.reason)
    else:
        logger.info("The JRE is not cached; the scanner will use its own Java runtime.")
    return None


def execute(
    config: AnalysisConfig,
    scanner_config: ScannerConfig,
    jre_cache: JreCache | None = None,
) -> ProcessResult:
    """Write the scanner properties and run the external analysis."""
    properties_file = write_project_properties(config)

    args = [scanner_config.scanner.command, f"-D{SonarProperties.PROJECT_SETTINGS}={properties_file}"]
    java = resolve_java(scanner_config, jre_cache)
    if java is not None:
        args.append(f"-D{JAVA_EXE_PROPERTY}={java}")

    env: dict[str, str] = {}
    token = os.environ.get(TOKEN_ENV_VAR)
    if token:
        env[TOKEN_ENV_VAR] = token

    result = run_external_tool(args, cwd=Path(config.sonar_scanner_working_directory or "."), env=env)
    if result.succeeded:
        logger.info("The analysis completed successfully.")
    else:
        logger.error("The analysis failed with exit code %d.", result.exit_code)
    return result
