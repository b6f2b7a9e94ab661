"""
Scanbridge CLI - Prepare builds for analysis and run the analysis afterwards.

Commands:
    begin       - Fetch server settings and rules, write the analysis snapshot
    end         - Run the external scanner from the snapshot
    jre-status  - Show the JRE cache state for a descriptor
    jre-install - Download a JRE into the local cache
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv

# Credentials such as SONAR_TOKEN may live in a local .env
load_dotenv()
load_dotenv(Path.cwd() / ".env")

from . import __version__
from .analysis_config import AnalysisConfig
from .args import process_args
from .config import BuildSettings, ScannerConfig
from .jre import JreCache, JreCacheFailure, JreCacheHit, JreDescriptor
from .postprocessor import execute as run_post_processor
from .preprocessor import PreProcessor
from .properties import SonarProperties, is_sensitive_property
from .web import WebClientDownloader, WebRequestError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


def _enable_debug_logging() -> None:
    logging.getLogger().setLevel(logging.DEBUG)


@click.group()
@click.version_option(version=__version__)
def main():
    """Scanbridge - Build integration for code quality analysis."""
    pass


@main.command()
@click.option("-k", "--key", "project_key", help="Project key")
@click.option("-n", "--name", "project_name", help="Project name")
@click.option("-v", "--version", "project_version", help="Project version")
@click.option("-o", "--organization", help="Organization key")
@click.option("-s", "--settings", "properties_file", type=click.Path(), help="Analysis properties file")
@click.option("-d", "properties", multiple=True, help="Analysis property, key=value (repeatable)")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.argument("extra_properties", nargs=-1)
def begin(
    project_key: str | None,
    project_name: str | None,
    project_version: str | None,
    organization: str | None,
    properties_file: str | None,
    properties: tuple[str, ...],
    verbose: bool,
    extra_properties: tuple[str, ...],
):
    """
    Prepare the build for analysis.

    Properties are given with -d, or as bare /d:key=value arguments.

    Examples:

        scanbridge begin -k my-project -d sonar.host.url=http://localhost:9000
        scanbridge begin -k my-project /d:sonar.host.url=http://localhost:9000
        scanbridge begin -k my-project -s ./SonarQube.Analysis.properties
    """
    _configure_logging(verbose)
    working_dir = Path.cwd()

    args = process_args(
        project_key,
        project_name,
        project_version,
        organization,
        list(properties) + list(extra_properties),
        properties_file,
        working_dir,
    )
    if args is None:
        click.echo("Pre-processing failed: invalid arguments.", err=True)
        sys.exit(1)

    if (args.try_get_setting(SonarProperties.VERBOSE) or "").lower() == "true":
        _enable_debug_logging()

    for prop in args.cmdline_properties:
        logger.debug("  %s=%s", prop.id, "******" if is_sensitive_property(prop.id) else prop.value)

    config = ScannerConfig.load(working_dir)
    build_settings = BuildSettings.from_directory(working_dir)

    click.echo(f"Preparing analysis of {args.project_key} against {args.server_url}")
    snapshot = PreProcessor(config).execute(args, build_settings)
    if snapshot is None:
        click.echo("Pre-processing failed.", err=True)
        sys.exit(1)

    click.echo(f"  Analysis configuration: {build_settings.analysis_config_path}")
    for analyzer in snapshot.analyzer_settings:
        click.echo(f"  {analyzer.language}: {len(analyzer.analyzer_assemblies)} analyzer file(s)")


@main.command()
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def end(verbose: bool):
    """Run the analysis prepared by `begin`."""
    _configure_logging(verbose)
    working_dir = Path.cwd()
    build_settings = BuildSettings.from_directory(working_dir)

    snapshot_path = build_settings.analysis_config_path
    if not snapshot_path.exists():
        logger.error("The analysis configuration was not found at %s. Run `scanbridge begin` first.", snapshot_path)
        sys.exit(1)

    snapshot = AnalysisConfig.load(snapshot_path)
    if (snapshot.get_setting(SonarProperties.VERBOSE) or "").lower() == "true":
        _enable_debug_logging()

    config = ScannerConfig.load(working_dir)
    result = run_post_processor(snapshot, config)
    if not result.succeeded:
        sys.exit(1)


@main.command(name="jre-status")
@click.option("--filename", required=True, help="JRE archive file name")
@click.option("--sha", required=True, help="SHA-256 of the archive")
@click.option("--java-path", required=True, help="Path of java inside the archive")
@click.option("--home", type=click.Path(), help="Scanner home (default: $SONAR_USER_HOME or ~/.sonar)")
def jre_status(filename: str, sha: str, java_path: str, home: str | None):
    """Show whether a JRE is in the local cache."""
    _configure_logging(False)
    scanner_home = Path(home) if home else ScannerConfig.load(Path.cwd()).cache.get_scanner_home()
    result = JreCache().is_jre_cached(scanner_home, JreDescriptor(filename, sha, java_path))

    if isinstance(result, JreCacheHit):
        click.echo(f"cached: {result.executable_path}")
    elif isinstance(result, JreCacheFailure):
        click.echo(f"error: {result.reason}", err=True)
        sys.exit(1)
    else:
        click.echo("not cached")


@main.command(name="jre-install")
@click.option("--url", help="Download URL of the JRE archive (default: scanner.jre_url)")
@click.option("--filename", help="JRE archive file name (default: scanner.jre_filename)")
@click.option("--sha", help="SHA-256 of the archive (default: scanner.jre_sha)")
@click.option("--java-path", help="Path of java inside the archive (default: scanner.jre_java_path)")
@click.option("--home", type=click.Path(), help="Scanner home (default: $SONAR_USER_HOME or ~/.sonar)")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def jre_install(
    url: str | None,
    filename: str | None,
    sha: str | None,
    java_path: str | None,
    home: str | None,
    verbose: bool,
):
    """
    Download a JRE into the local cache unless it is already there.

    Missing options are taken from the scanner section of scanbridge.yml.
    """
    _configure_logging(verbose)
    config = ScannerConfig.load(Path.cwd())
    url = url or config.scanner.jre_url
    filename = filename or config.scanner.jre_filename
    sha = sha or config.scanner.jre_sha
    java_path = java_path or config.scanner.jre_java_path
    if not (url and filename and sha and java_path):
        click.echo("error: the JRE url, filename, sha and java path are all required.", err=True)
        sys.exit(1)

    scanner_home = Path(home) if home else config.cache.get_scanner_home()
    try:
        with WebClientDownloader(url, timeout=config.http.timeout) as downloader:
            def fetch(target: Path) -> None:
                if not downloader.try_download_file_if_exists(url, target):
                    raise WebRequestError(f"The JRE was not found at {url}", 404)

            result = JreCache().download_jre(scanner_home, JreDescriptor(filename, sha, java_path), fetch)
    except WebRequestError as e:
        click.echo(f"error: {e}", err=True)
        sys.exit(1)

    if isinstance(result, JreCacheHit):
        click.echo(f"installed: {result.executable_path}")
    else:
        reason = result.reason if isinstance(result, JreCacheFailure) else "the JRE is not in the cache"
        click.echo(f"error: {reason}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
