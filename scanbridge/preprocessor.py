"""
The ``begin`` step.

1. Connect to the server and check its version and license
2. Fetch project settings and the enabled languages
3. For each supported language, fetch the quality profile and its rules
4. Install the analyzer plugins and write the per-language rule files
5. Fetch the incremental analysis cache (pull requests only)
6. Write the analysis configuration snapshot
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import yaml

from .analysis_config import AnalysisConfig, AnalyzerSettings, generate_config
from .args import ProcessedArgs
from .config import BuildSettings, ScannerConfig, ensure_empty_directories
from .plugins import EmbeddedAnalyzerInstaller, Plugin, PluginInstallError
from .properties import SonarProperties
from .server import ActiveRule, AnalysisError, SensorCacheEntry, SonarWebServer, create_server
from .web import CredentialError, WebClientDownloader, WebRequestError

logger = logging.getLogger(__name__)

RULES_FILE_TEMPLATE = "SonarQubeRoslyn-{language}.yml"
CACHE_FILE_NAME = "PullRequestCache.yml"


@dataclass
class LanguageRules:
    """Quality profile data fetched for one language."""
    language: str
    profile_key: str | None = None
    active_rules: list[ActiveRule] = field(default_factory=list)
    inactive_rules: list[str] = field(default_factory=list)


def create_downloader(args: ProcessedArgs, timeout: float) -> WebClientDownloader:
    """
    Build the HTTP client from the resolved properties.

    A token is sent as the Basic username with an empty password.
    """
    username = args.try_get_setting(SonarProperties.TOKEN) or args.try_get_setting(SonarProperties.LOGIN)
    password = args.try_get_setting(SonarProperties.PASSWORD)
    return WebClientDownloader(
        args.server_url,
        username=username,
        password=password,
        client_cert_path=args.try_get_setting(SonarProperties.CLIENT_CERT_PATH),
        client_cert_password=args.try_get_setting(SonarProperties.CLIENT_CERT_PASSWORD),
        timeout=timeout,
    )


def fetch_language_rules(
    server: SonarWebServer,
    args: ProcessedArgs,
    language: str,
) -> LanguageRules:
    """Quality profile and rules for one language; empty when there is no profile."""
    branch = args.try_get_setting(SonarProperties.PROJECT_BRANCH)
    found, profile_key = server.try_get_quality_profile(args.project_key, branch, args.organization, language)
    if not found or not profile_key:
        logger.debug("No quality profile found for language '%s'", language)
        return LanguageRules(language)

    return LanguageRules(
        language=language,
        profile_key=profile_key,
        active_rules=server.get_active_rules(profile_key),
        inactive_rules=server.get_inactive_rules(profile_key, language),
    )


async def _gather_language_rules(
    server: SonarWebServer,
    args: ProcessedArgs,
    languages: list[str],
) -> list[LanguageRules]:
    tasks = [asyncio.to_thread(fetch_language_rules, server, args, language) for language in languages]
    return list(await asyncio.gather(*tasks))


def fetch_all_language_rules(
    server: SonarWebServer,
    args: ProcessedArgs,
    languages: list[str],
) -> list[LanguageRules]:
    """Fetch every language concurrently; results come back in input order."""
    if not languages:
        return []
    return asyncio.run(_gather_language_rules(server, args, languages))


def write_rules_file(rules: LanguageRules, config_dir: Path) -> Path:
    path = Path(config_dir) / RULES_FILE_TEMPLATE.format(language=rules.language)
    data = {
        "language": rules.language,
        "profile_key": rules.profile_key,
        "active_rules": [rule.to_dict() for rule in rules.active_rules],
        "inactive_rules": list(rules.inactive_rules),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    return path


def write_cache_file(entries: list[SensorCacheEntry], config_dir: Path) -> Path | None:
    """Persist the cache entries as key to SHA-256 digest of their data."""
    if not entries:
        return None
    path = Path(config_dir) / CACHE_FILE_NAME
    data = {entry.key: hashlib.sha256(entry.data).hexdigest() for entry in entries}
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=True)
    logger.info("Incremental PR analysis: %d cache entries written to %s", len(entries), path)
    return path


class PreProcessor:
    """Prepares a build for analysis."""

    def __init__(
        self,
        config: ScannerConfig,
        server_factory: Callable[[ProcessedArgs], SonarWebServer | None] | None = None,
    ):
        self.config = config
        self.server_factory = server_factory or self._create_server

    def _create_server(self, args: ProcessedArgs) -> SonarWebServer | None:
        downloader = create_downloader(args, self.config.http.timeout)
        server = create_server(downloader, args.organization)
        if server is None:
            downloader.close()
        return server

    def execute(self, args: ProcessedArgs, build_settings: BuildSettings) -> AnalysisConfig | None:
        """Run the pre-processing. Returns the snapshot, or None on failure."""
        try:
            ensure_empty_directories(build_settings.config_dir, build_settings.output_dir, build_settings.bin_dir)
        except OSError as e:
            logger.error("The working directories under '%s' could not be prepared: %s", build_settings.sonarqube_dir, e)
            return None

        try:
            server = self.server_factory(args)
        except CredentialError as e:
            logger.error("Invalid credentials: %s", e)
            return None
        except OSError as e:
            logger.error("The client certificate could not be loaded: %s", e)
            return None
        if server is None:
            return None

        try:
            return self._execute(server, args, build_settings)
        except (WebRequestError, AnalysisError, PluginInstallError) as e:
            logger.error("%s", e)
            return None
        except OSError as e:
            logger.error("A file operation failed: %s", e)
            return None
        except ValueError as e:
            logger.error("The server returned an unexpected response: %s", e)
            return None
        finally:
            server.close()

    def _execute(
        self,
        server: SonarWebServer,
        args: ProcessedArgs,
        build_settings: BuildSettings,
    ) -> AnalysisConfig | None:
        if not server.is_server_license_valid():
            return None

        branch = args.try_get_setting(SonarProperties.PROJECT_BRANCH)
        server_properties = server.download_properties(args.project_key, branch)

        installed_languages = set(server.get_all_languages())
        languages = [a.language for a in self.config.analyzers if a.language in installed_languages]
        logger.debug("Languages to prepare: %s", ", ".join(languages) or "(none)")

        analyzer_settings = self._prepare_analyzers(server, args, languages, build_settings)

        write_cache_file(server.download_cache(args), build_settings.config_dir)

        config = generate_config(
            args,
            build_settings,
            server_properties,
            analyzer_settings,
            server.version_string,
        )
        logger.info("Pre-processing succeeded.")
        return config

    def _prepare_analyzers(
        self,
        server: SonarWebServer,
        args: ProcessedArgs,
        languages: list[str],
        build_settings: BuildSettings,
    ) -> list[AnalyzerSettings]:
        installer = EmbeddedAnalyzerInstaller(server, self.config.cache.get_plugin_cache_dir())
        settings = []
        for rules in fetch_all_language_rules(server, args, languages):
            if not rules.active_rules:
                logger.debug("No active rules for language '%s'", rules.language)
                continue

            ruleset_path = write_rules_file(rules, build_settings.config_dir)
            analyzer = self.config.get_analyzer(rules.language)
            plugin = Plugin(analyzer.plugin_key, analyzer.plugin_version, analyzer.static_resource_name)
            assemblies = installer.install_assemblies([plugin])
            settings.append(AnalyzerSettings(
                language=rules.language,
                ruleset_path=str(ruleset_path),
                analyzer_assemblies=sorted(assemblies),
            ))
        return settings
