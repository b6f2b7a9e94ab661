"""
Scanbridge - Build-integration scanner for remote static-analysis servers.

A CLI tool that:
1. Resolves analysis properties from the command line and a properties file
2. Negotiates with the analysis server (version, license, settings, rules)
3. Installs analyzer plugin resources into a local cache
4. Writes the analysis configuration consumed by the build and the end step
5. Runs the external analysis executable with a cached JRE

Usage:
    scanbridge begin -k <key> -d sonar.host.url=<url>   # Pre-process step
    scanbridge end                                      # Post-process step
    scanbridge jre-status                               # Inspect the JRE cache
"""

__version__ = "0.1.0"
__author__ = "Scanbridge"
