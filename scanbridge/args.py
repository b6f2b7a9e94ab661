"""Validated arguments for the pre-processing step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .properties import (
    Property,
    PropertySet,
    ResolvedProperties,
    SonarProperties,
    resolve_properties,
)

logger = logging.getLogger(__name__)


class MissingSettingError(KeyError):
    """A required setting is not defined anywhere."""


@dataclass
class ProcessedArgs:
    """Project identity plus the resolved command-line and file properties."""
    project_key: str
    project_name: str | None = None
    project_version: str | None = None
    organization: str | None = None
    properties: ResolvedProperties = field(default_factory=ResolvedProperties)

    def __post_init__(self) -> None:
        if not self.project_key or not self.project_key.strip():
            raise ValueError("project_key must not be empty")

    @property
    def cmdline_properties(self) -> PropertySet:
        return self.properties.cmdline

    @property
    def properties_file_path(self) -> Path | None:
        return self.properties.properties_file_path

    @property
    def server_url(self) -> str:
        return self.get_setting(SonarProperties.HOST_URL)

    def get_setting(self, key: str) -> str:
        """
        Return the effective value of a setting.

        Raises:
            MissingSettingError: if the key is not defined
        """
        value = self.properties.get_value(key)
        if value is None:
            raise MissingSettingError(f"The required setting '{key}' was not found")
        return value

    def try_get_setting(self, key: str, default: str | None = None) -> str | None:
        return self.properties.get_value(key, default)

    def all_properties(self) -> list[Property]:
        return self.properties.all_properties()


def process_args(
    project_key: str | None,
    project_name: str | None,
    project_version: str | None,
    organization: str | None,
    cmdline_properties: Iterable[str],
    properties_file: str | Path | None,
    default_dir: Path,
) -> ProcessedArgs | None:
    """
    Validate the begin-step arguments and resolve properties.

    Every problem is logged so the user sees all of them at once.
    Returns None unless everything is valid.
    """
    valid = True
    if not project_key or not project_key.strip():
        logger.error("A project key is required. Use the -k/--key argument.")
        valid = False

    resolved, _errors = resolve_properties(cmdline_properties, properties_file, default_dir)
    if resolved is None:
        valid = False
    else:
        host_url = resolved.get_value(SonarProperties.HOST_URL)
        if not host_url or not host_url.strip():
            logger.error(
                "The server URL is required. Set '%s' on the command line or in the properties file.",
                SonarProperties.HOST_URL,
            )
            valid = False

    if not valid:
        return None

    return ProcessedArgs(
        project_key=project_key,  # type: ignore[arg-type]
        project_name=project_name,
        project_version=project_version,
        organization=organization or resolved.get_value(SonarProperties.ORGANIZATION),  # type: ignore[union-attr]
        properties=resolved,  # type: ignore[arg-type]
    )
