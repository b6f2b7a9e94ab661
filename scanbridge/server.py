"""
Version-aware client for the analysis server.

The server API differs across versions. The differences are captured once,
when the client is created, in a ``ServerCapabilities`` record derived from
the version cutoffs below:

- 6.3: bulk settings endpoint and the ``organization`` parameter
- 7.9: oldest version without a deprecation warning
- 9.8: rule search returns paging in a ``paging`` object
- 9.9: analysis cache API

Servers older than 6.3 get ``LegacyWebServer``; everything else gets
``ModernWebServer``.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from .args import ProcessedArgs
from .properties import SonarProperties
from .web import ServerUnreachableError, WebClientDownloader, WebRequestError, escape_query

logger = logging.getLogger(__name__)

ServerVersion = tuple[int, ...]

BULK_PROPERTIES_VERSION: ServerVersion = (6, 3)
ORGANIZATION_PARAMETER_VERSION: ServerVersion = (6, 3)
SUPPORTED_VERSION: ServerVersion = (7, 9)
PAGING_OBJECT_VERSION: ServerVersion = (9, 8)
ANALYSIS_CACHE_VERSION: ServerVersion = (9, 9)

RULES_PAGE_SIZE = 500
MAX_RULE_RESULTS = 10_000

LEGACY_TEST_PROJECT_PATTERN_KEY = "sonar.cs.msbuild.testProjectPattern"
TEST_PROJECT_PATTERN_KEY = "sonar.msbuild.testProjectPattern"
LICENSE_NOT_FOUND_MESSAGE = "License not found"

# CI variables that name the pull request target branch
BASE_BRANCH_ENV_VARS = ("SYSTEM_PULLREQUEST_TARGETBRANCH", "GITHUB_BASE_REF")


class AnalysisError(Exception):
    """Server data that makes analysis impossible (e.g. ambiguous profile)."""


def parse_server_version(text: str) -> ServerVersion | None:
    """Parse '9.9.0.65466-SNAPSHOT' into (9, 9, 0, 65466)."""
    numeric = text.strip().split("-", 1)[0]
    try:
        parts = tuple(int(part) for part in numeric.split("."))
    except ValueError:
        return None
    return parts if parts else None


def format_version(version: ServerVersion) -> str:
    return ".".join(str(part) for part in version)


@dataclass(frozen=True)
class ServerCapabilities:
    """Feature flags resolved from the server version."""
    version: ServerVersion
    bulk_properties: bool
    organization_parameter: bool
    paging_object: bool
    analysis_cache: bool
    deprecated: bool

    @classmethod
    def for_version(cls, version: ServerVersion) -> "ServerCapabilities":
        return cls(
            version=version,
            bulk_properties=version >= BULK_PROPERTIES_VERSION,
            organization_parameter=version >= ORGANIZATION_PARAMETER_VERSION,
            paging_object=version >= PAGING_OBJECT_VERSION,
            analysis_cache=version >= ANALYSIS_CACHE_VERSION,
            deprecated=version < SUPPORTED_VERSION,
        )


@dataclass
class ActiveRule:
    """A rule from a quality profile."""
    repo_key: str
    rule_key: str
    internal_key: str | None = None
    template_key: str | None = None
    parameters: dict[str, str] | None = None

    @property
    def internal_key_or_key(self) -> str:
        return self.internal_key or self.rule_key

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_key": self.repo_key,
            "rule_key": self.rule_key,
            "internal_key": self.internal_key,
            "template_key": self.template_key,
            "parameters": self.parameters,
        }


@dataclass(frozen=True)
class SensorCacheEntry:
    """One entry of the incremental analysis cache."""
    key: str
    data: bytes


def _read_varint(buffer: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(buffer):
            raise ValueError("Truncated varint in cache payload")
        byte = buffer[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("Varint too long in cache payload")


def _parse_cache_message(message: bytes) -> SensorCacheEntry:
    key = ""
    data = b""
    pos = 0
    while pos < len(message):
        tag, pos = _read_varint(message, pos)
        field_number, wire_type = tag >> 3, tag & 0x07
        if wire_type == 2:
            length, pos = _read_varint(message, pos)
            value = message[pos:pos + length]
            if len(value) != length:
                raise ValueError("Truncated field in cache payload")
            pos += length
            if field_number == 1:
                key = value.decode("utf-8")
            elif field_number == 2:
                data = bytes(value)
        elif wire_type == 0:
            _, pos = _read_varint(message, pos)
        elif wire_type == 1:
            pos += 8
        elif wire_type == 5:
            pos += 4
        else:
            raise ValueError(f"Unsupported wire type {wire_type} in cache payload")
    return SensorCacheEntry(key=key, data=data)


def parse_cache_entries(stream: BinaryIO) -> list[SensorCacheEntry]:
    """Parse a stream of varint length-prefixed cache entry messages."""
    buffer = stream.read()
    entries = []
    pos = 0
    while pos < len(buffer):
        length, pos = _read_varint(buffer, pos)
        message = buffer[pos:pos + length]
        if len(message) != length:
            raise ValueError("Truncated message in cache payload")
        pos += length
        entries.append(_parse_cache_message(message))
    return entries


def query_server_version(downloader: WebClientDownloader) -> ServerVersion | None:
    """Fetch the server version. Any failure is logged and yields None."""
    logger.debug("Fetching server version...")
    try:
        contents = downloader.download("api/server/version")
    except ServerUnreachableError:
        logger.error("Unable to connect to server. Please check if the server is running and if the address is correct.")
        return None
    except Exception as e:
        logger.error("An error occured when calling: %s", e)
        return None

    version = parse_server_version(contents)
    if version is None:
        logger.error("An error occured when calling: unexpected server version '%s'", contents.strip())
    return version


class SonarWebServer(ABC):
    """Behaviour shared by every server dialect."""

    def __init__(
        self,
        downloader: WebClientDownloader,
        server_version: ServerVersion,
        organization: str | None = None,
    ):
        if downloader is None:
            raise ValueError("downloader is required")
        if not server_version:
            raise ValueError("server_version is required")
        self.downloader = downloader
        self.server_version = server_version
        self.organization = organization
        self.capabilities = ServerCapabilities.for_version(server_version)

        if self.capabilities.deprecated:
            logger.warning(
                "The version of the server (%s) is deprecated. Please upgrade to %s or later.",
                format_version(server_version),
                format_version(SUPPORTED_VERSION),
            )

    def close(self) -> None:
        self.downloader.close()

    @property
    def version_string(self) -> str:
        return format_version(self.server_version)

    # Dialect hooks

    @abstractmethod
    def download_component_properties(self, component: str) -> dict[str, str]:
        """Return the settings of a component as a flat key/value map."""

    @abstractmethod
    def _quality_profile_search_url(self, project_id: str) -> str:
        ...

    def _add_organization(self, url: str, organization: str | None) -> str:
        if not organization or not self.capabilities.organization_parameter:
            return url
        return url + escape_query("&organization={}", organization)

    # Shared operations

    @staticmethod
    def project_id(project_key: str, branch: str | None = None) -> str:
        return f"{project_key}:{branch}" if branch else project_key

    def download_properties(self, project_key: str, branch: str | None = None) -> dict[str, str]:
        """Settings for a project (and branch), normalized into one map."""
        return self.download_component_properties(self.project_id(project_key, branch))

    def is_server_license_valid(self) -> bool:
        """
        Check the server license.

        Only a 401 and a 404 from the license endpoint are interpreted here;
        any other HTTP failure raises.

        Raises:
            WebRequestError: on any other error status or a malformed body
        """
        logger.debug("Checking server license validity...")
        response = self.downloader.download_resource("api/editions/is_valid_license")
        if response.status_code == 401:
            logger.error("Invalid credentials. Please check the authentication token or username and password.")
            return False

        if response.status_code == 404:
            try:
                body = response.json()
            except ValueError:
                body = {}
            errors = body.get("errors") or [] if isinstance(body, dict) else []
            if any(isinstance(e, dict) and e.get("msg") == LICENSE_NOT_FOUND_MESSAGE for e in errors):
                logger.error(
                    "Your server at %s is not licensed. Please contact your administrator.",
                    self.downloader.get_base_url(),
                )
                return False
            # Editions without a license concept do not expose the endpoint
            logger.debug("No license API on this server edition; treating the license as valid.")
            return True

        if response.status_code >= 400:
            raise WebRequestError(
                f"Server error: {response.status_code} - {response.text[:500]}",
                response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise WebRequestError(f"Unexpected license check response: {e}", response.status_code) from e

        if isinstance(body, dict) and body.get("isValidLicense") is True:
            return True

        logger.error(
            "Your server at %s is not licensed. Please contact your administrator.",
            self.downloader.get_base_url(),
        )
        return False

    def try_get_quality_profile(
        self,
        project_key: str,
        branch: str | None,
        organization: str | None,
        language: str,
    ) -> tuple[bool, str | None]:
        """
        Find the quality profile used by a project for one language.

        Falls back to the server default profiles when the project is unknown.

        Returns:
            (True, profile key) if found, otherwise (False, None)

        Raises:
            AnalysisError: if several profiles match or no profile data is available
        """
        organization = organization or self.organization
        project_id = self.project_id(project_key, branch)
        url = self._add_organization(self._quality_profile_search_url(project_id), organization)

        found, contents = self.downloader.try_download_if_exists(url)
        if not found:
            logger.debug("No quality profile found for project '%s', using the default profile.", project_id)
            default_url = self._add_organization("api/qualityprofiles/search?defaults=true", organization)
            found, contents = self.downloader.try_download_if_exists(default_url)
            if not found or not contents:
                message = "Cannot download quality profile. Check scanner arguments and the reported URL for more information."
                logger.error(message)
                raise AnalysisError(message)

        data = json.loads(contents)
        profiles = data.get("profiles") or [] if isinstance(data, dict) else []
        matching = [
            profile for profile in profiles
            if profile.get("language") == language and profile.get("key")
        ]
        if not matching:
            return False, None
        if len(matching) > 1:
            raise AnalysisError(
                f"Expected a single quality profile for language '{language}' and project '{project_id}', "
                f"found {len(matching)}."
            )
        return True, matching[0]["key"]

    def _parse_paging(self, data: dict[str, Any]) -> tuple[int, int]:
        if self.capabilities.paging_object:
            paging = data.get("paging", {})
            return int(paging.get("total", 0)), int(paging.get("pageSize", 0))
        return int(data.get("total", 0)), int(data.get("ps", 0))

    def _search_rules(self, url_template: str, *args: str) -> list[dict[str, Any]]:
        """Collect rule search pages, capped at MAX_RULE_RESULTS."""
        pages: list[dict[str, Any]] = []
        fetched = 0
        page = 1
        while True:
            url = escape_query(url_template, *args, str(page))
            data = json.loads(self.downloader.download(url))
            pages.append(data)
            total, page_size = self._parse_paging(data)
            fetched += page_size
            if page_size <= 0 or fetched >= total or fetched >= MAX_RULE_RESULTS:
                return pages
            page += 1

    def get_active_rules(self, profile_id: str) -> list[ActiveRule]:
        """Active rules of a quality profile, with their parameters."""
        template = (
            "api/rules/search?f=repo,name,severity,lang,internalKey,templateKey,params,actives"
            f"&ps={RULES_PAGE_SIZE}&activation=true&qprofile={{}}&p={{}}"
        )
        rules = []
        for data in self._search_rules(template, profile_id):
            actives = data.get("actives") or {}
            for rule in data.get("rules", []):
                rules.append(self._parse_active_rule(rule, actives))
        return rules

    @staticmethod
    def _parse_active_rule(rule: dict[str, Any], actives: dict[str, Any]) -> ActiveRule:
        key = rule["key"]
        rule_key = key.split(":", 1)[1] if ":" in key else key
        active_rule = ActiveRule(
            repo_key=rule.get("repo", ""),
            rule_key=rule_key,
            internal_key=rule.get("internalKey"),
            template_key=rule.get("templateKey"),
        )

        bodies = actives.get(key) or []
        if bodies:
            # Several bodies only happen with inherited profiles; use the first
            params = {p["key"]: p.get("value", "") for p in bodies[0].get("params", []) if "key" in p}
            active_rule.parameters = params
            if "CheckId" in params:
                active_rule.rule_key = params["CheckId"]
                active_rule.internal_key = None
        return active_rule

    def get_inactive_rules(self, profile_id: str, language: str) -> list[str]:
        """Keys of the rules of a language that are not active in the profile."""
        template = (
            f"api/rules/search?f=internalKey&ps={RULES_PAGE_SIZE}&activation=false"
            "&qprofile={}&languages={}&p={}"
        )
        keys = []
        for data in self._search_rules(template, profile_id, language):
            keys.extend(rule["key"] for rule in data.get("rules", []) if "key" in rule)
        return keys

    def get_all_languages(self) -> list[str]:
        contents = self.downloader.download("api/languages/list")
        data = json.loads(contents)
        return [language["key"] for language in data.get("languages", []) if "key" in language]

    def try_download_embedded_file(self, plugin_key: str, resource_name: str, target_dir: Path) -> bool:
        """Download ``static/{plugin}/{resource}`` into target_dir. False on HTTP 404."""
        if not plugin_key:
            raise ValueError("plugin_key is required")
        if not resource_name:
            raise ValueError("resource_name is required")
        if not target_dir:
            raise ValueError("target_dir is required")

        url = escape_query("static/{}/{}", plugin_key, resource_name)
        target_path = Path(target_dir) / resource_name
        return self.downloader.try_download_file_if_exists(url, target_path)

    def download_cache(self, args: ProcessedArgs) -> list[SensorCacheEntry]:
        """
        Incremental analysis cache for pull requests.

        This is an optimization only: every failure degrades to an empty list.
        """
        if args is None:
            raise ValueError("args is required")

        if not self.capabilities.analysis_cache:
            logger.info("Incremental PR analysis is available starting with server version %s.",
                        format_version(ANALYSIS_CACHE_VERSION))
            return []
        if not args.project_key or not args.project_key.strip():
            logger.info("Incremental PR analysis: the project key is not set, skipping the cache download.")
            return []
        branch = get_base_branch(args)
        if not branch:
            logger.info("Incremental PR analysis: the base branch is not set, skipping the cache download.")
            return []

        try:
            logger.info("Downloading cache. Project key: %s, branch: %s.", args.project_key, branch)
            url = escape_query("api/analysis_cache/get?project={}&branch={}", args.project_key, branch)
            stream = self.downloader.download_stream(url)
            return parse_cache_entries(stream)
        except Exception as e:
            logger.warning("Incremental PR analysis: an error occurred while retrieving the cache entries. %s", e)
            logger.debug("Cache download failure", exc_info=True)
            return []


def get_base_branch(args: ProcessedArgs) -> str | None:
    """Pull request base branch from the properties, falling back to CI variables."""
    branch = args.try_get_setting(SonarProperties.PULL_REQUEST_BASE)
    if branch:
        return branch
    for env_var in BASE_BRANCH_ENV_VARS:
        value = os.environ.get(env_var)
        if value:
            return value
    return None


def normalize_test_project_pattern(properties: dict[str, str]) -> dict[str, str]:
    """Rename the legacy test project pattern key."""
    if LEGACY_TEST_PROJECT_PATTERN_KEY in properties:
        value = properties.pop(LEGACY_TEST_PROJECT_PATTERN_KEY)
        logger.warning(
            "The property '%s' is deprecated. Use '%s' instead.",
            LEGACY_TEST_PROJECT_PATTERN_KEY,
            TEST_PROJECT_PATTERN_KEY,
        )
        properties.setdefault(TEST_PROJECT_PATTERN_KEY, value)
    return properties


class ModernWebServer(SonarWebServer):
    """Servers 6.3 and later."""

    def _quality_profile_search_url(self, project_id: str) -> str:
        return escape_query("api/qualityprofiles/search?project={}", project_id)

    def download_component_properties(self, component: str) -> dict[str, str]:
        logger.debug("Fetching properties for component '%s'...", component)
        found, contents = self.downloader.try_download_if_exists(
            escape_query("api/settings/values?component={}", component)
        )
        if not found:
            logger.debug("No settings for component '%s', using the global settings.", component)
            contents = self.downloader.download("api/settings/values")
        return normalize_test_project_pattern(self._parse_settings(json.loads(contents)))

    @staticmethod
    def _parse_settings(data: dict[str, Any]) -> dict[str, str]:
        properties: dict[str, str] = {}
        for setting in data.get("settings", []):
            key = setting["key"]
            if "value" in setting:
                properties[key] = str(setting["value"])
            elif "values" in setting:
                properties[key] = ",".join(str(v) for v in setting["values"])
            elif "fieldValues" in setting:
                for index, field_values in enumerate(setting["fieldValues"], start=1):
                    for field_name, field_value in field_values.items():
                        properties[f"{key}.{index}.{field_name}"] = str(field_value)
        return properties


class LegacyWebServer(SonarWebServer):
    """Servers older than 6.3: single properties endpoint, no organizations."""

    def _quality_profile_search_url(self, project_id: str) -> str:
        return escape_query("api/qualityprofiles/search?projectKey={}", project_id)

    def download_component_properties(self, component: str) -> dict[str, str]:
        logger.debug("Fetching properties for component '%s' (legacy API)...", component)
        found, contents = self.downloader.try_download_if_exists(
            escape_query("api/properties?resource={}", component)
        )
        if not found:
            contents = self.downloader.download("api/properties")
        properties = {item["key"]: str(item.get("value", "")) for item in json.loads(contents)}
        return normalize_test_project_pattern(properties)


def create_server(
    downloader: WebClientDownloader,
    organization: str | None = None,
) -> SonarWebServer | None:
    """Query the server version and return the matching dialect, or None."""
    version = query_server_version(downloader)
    if version is None:
        return None
    logger.debug("Server version: %s", format_version(version))
    server_cls = ModernWebServer if version >= BULK_PROPERTIES_VERSION else LegacyWebServer
    return server_cls(downloader, version, organization)
