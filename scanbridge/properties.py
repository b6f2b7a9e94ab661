"""
Analysis property handling for Scanbridge.

Properties come from three places:
- The command line (``-d key=value`` or the legacy ``/d:key=value`` form)
- A properties file (``key=value`` lines)
- The analysis server (layered in by the consumer, not resolved here)

Lookups prefer the command line, then the properties file.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

DEFAULT_PROPERTIES_FILE_NAME = "SonarQube.Analysis.properties"
CMDLINE_PROPERTY_PREFIX = "/d:"

# Single-line key/value pattern. The key starts with a word character and may
# contain word characters, dots and dashes; whitespace is not allowed.
KEY_VALUE_PROPERTY_PATTERN = r"^(?P<key>\w[\w\d\.-]*)=(?P<value>[^\r\n]+)"
_SINGLE_LINE_PROPERTY_RE = re.compile(KEY_VALUE_PROPERTY_PATTERN)
_FILE_PROPERTY_RE = re.compile(r"^(?P<key>\w[\w\d\.-]*)=(?P<value>[^\r\n]*)", re.MULTILINE)


class SonarProperties:
    """Well-known analysis property keys."""

    HOST_URL = "sonar.host.url"
    LOGIN = "sonar.login"
    PASSWORD = "sonar.password"
    TOKEN = "sonar.token"
    DB_USER_NAME = "sonar.jdbc.username"
    DB_PASSWORD = "sonar.jdbc.password"
    CLIENT_CERT_PATH = "sonar.clientcert.path"
    CLIENT_CERT_PASSWORD = "sonar.clientcert.password"
    ORGANIZATION = "sonar.organization"
    PROJECT_KEY = "sonar.projectKey"
    PROJECT_NAME = "sonar.projectName"
    PROJECT_VERSION = "sonar.projectVersion"
    PROJECT_BRANCH = "sonar.branch"
    PULL_REQUEST_BASE = "sonar.pullrequest.base"
    VERBOSE = "sonar.verbose"
    PROJECT_SETTINGS = "project.settings"


SENSITIVE_PROPERTY_KEYS = frozenset({
    SonarProperties.LOGIN,
    SonarProperties.PASSWORD,
    SonarProperties.TOKEN,
    SonarProperties.DB_USER_NAME,
    SonarProperties.DB_PASSWORD,
    SonarProperties.CLIENT_CERT_PASSWORD,
})


def is_sensitive_property(key: str) -> bool:
    """Return True if the key carries credentials."""
    return key in SENSITIVE_PROPERTY_KEYS


def is_secured_server_property(key: str) -> bool:
    """Server-side keys ending in ``.secured`` hold licenses and secrets."""
    return key.lower().endswith(".secured")


class PropertyError(Exception):
    """Invalid property input (bad format, duplicate key, missing file)."""


@dataclass(frozen=True)
class Property:
    """A single analysis property. Keys are compared ordinally."""
    id: str
    value: str

    @classmethod
    def parse(cls, text: str) -> Property | None:
        """Parse a ``key=value`` string. Returns None if it does not match."""
        match = _SINGLE_LINE_PROPERTY_RE.match(text)
        if not match:
            return None
        return cls(id=match.group("key"), value=match.group("value"))

    @property
    def is_sensitive(self) -> bool:
        return is_sensitive_property(self.id)


@dataclass
class PropertySet:
    """Ordered collection of properties, optionally backed by a file."""
    properties: list[Property] = field(default_factory=list)
    file_path: Path | None = None

    def __iter__(self) -> Iterator[Property]:
        return iter(self.properties)

    def __len__(self) -> int:
        return len(self.properties)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def get(self, key: str) -> Property | None:
        """Return the first property with the given key."""
        if not key or not key.strip():
            raise ValueError("key must not be empty")
        for prop in self.properties:
            if prop.id == key:
                return prop
        return None

    def get_value(self, key: str, default: str | None = None) -> str | None:
        prop = self.get(key)
        return prop.value if prop else default

    def add(self, prop: Property) -> None:
        """Append a property; duplicate keys are rejected."""
        existing = self.get(prop.id)
        if existing is not None:
            raise PropertyError(
                f"A value has already been supplied for this property. "
                f"Key: {prop.id}, existing value: {existing.value}"
            )
        self.properties.append(prop)

    @classmethod
    def load(cls, path: Path) -> "PropertySet":
        """Load a ``key=value`` properties file. Later duplicates are ignored."""
        text = Path(path).read_text(encoding="utf-8")
        result = cls(file_path=Path(path))
        for match in _FILE_PROPERTY_RE.finditer(text):
            key = match.group("key")
            if key in result:
                logger.debug("Ignoring duplicate property '%s' in %s", key, path)
                continue
            result.properties.append(Property(id=key, value=match.group("value")))
        return result

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"{prop.id}={prop.value}" for prop in self.properties]
        path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
        self.file_path = path


@dataclass
class ResolvedProperties:
    """Effective view over the command line and file property sets."""
    cmdline: PropertySet = field(default_factory=PropertySet)
    file: PropertySet = field(default_factory=PropertySet)

    @property
    def properties_file_path(self) -> Path | None:
        return self.file.file_path

    def get_value(self, key: str, default: str | None = None) -> str | None:
        for source in (self.cmdline, self.file):
            prop = source.get(key)
            if prop is not None:
                return prop.value
        return default

    def has(self, key: str) -> bool:
        return key in self.cmdline or key in self.file

    def all_properties(self) -> list[Property]:
        """All properties, command line first, one entry per key."""
        merged: dict[str, Property] = {}
        for source in (self.cmdline, self.file):
            for prop in source:
                merged.setdefault(prop.id, prop)
        return list(merged.values())


def parse_cmdline_properties(tokens: Iterable[str]) -> tuple[PropertySet, list[str]]:
    """
    Parse command-line property tokens.

    Each token is ``key=value``, optionally prefixed with ``/d:``.

    Returns:
        Tuple of (property set, error messages). The set is only meaningful
        when there are no errors.
    """
    properties = PropertySet()
    errors: list[str] = []
    for token in tokens:
        text = token[len(CMDLINE_PROPERTY_PREFIX):] if token.startswith(CMDLINE_PROPERTY_PREFIX) else token
        prop = Property.parse(text)
        if prop is None:
            errors.append(f"The format of the analysis property {token} is invalid")
            continue
        try:
            properties.add(prop)
        except PropertyError as e:
            errors.append(str(e))
    return properties, errors


def locate_properties_file(
    explicit_path: str | Path | None,
    default_dir: Path,
) -> tuple[PropertySet | None, list[str]]:
    """
    Find and load the properties file.

    An explicit path wins; otherwise the default file in ``default_dir`` is
    used when present. A missing default file yields an empty set.
    """
    if explicit_path is not None:
        path = Path(explicit_path)
        if not path.is_file():
            return None, [f"Unable to find the analysis settings file '{path}'. Please fix the path to this settings file."]
    else:
        path = Path(default_dir) / DEFAULT_PROPERTIES_FILE_NAME
        if not path.is_file():
            logger.debug("Default properties file was not found at %s", path)
            return PropertySet(), []
        logger.debug("Default properties file was found at %s", path)

    logger.debug("Loading analysis properties from %s", path)
    try:
        return PropertySet.load(path), []
    except (OSError, UnicodeDecodeError) as e:
        return None, [f"Unable to read the analysis settings file '{path}': {e}"]


def resolve_properties(
    cmdline_args: Iterable[str],
    properties_file_path: str | Path | None,
    default_dir: Path,
) -> tuple[ResolvedProperties | None, list[str]]:
    """
    Resolve command-line and file properties into one effective view.

    Returns:
        Tuple of (resolved properties or None on any error, error messages)
    """
    cmdline, errors = parse_cmdline_properties(cmdline_args)
    file_properties, file_errors = locate_properties_file(properties_file_path, default_dir)
    errors.extend(file_errors)

    for error in errors:
        logger.error(error)
    if errors or file_properties is None:
        return None, errors

    return ResolvedProperties(cmdline=cmdline, file=file_properties), []
