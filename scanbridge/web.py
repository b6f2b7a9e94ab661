"""
HTTP client for the analysis server.

Wraps a ``requests.Session`` with:
- Basic authentication (validated up front)
- A fixed User-Agent identifying the scanner
- TLS 1.0/1.1/1.2 support for older server deployments
- Optional client certificate
- 404-as-absent semantics for the ``try_*`` downloads
"""

from __future__ import annotations

import base64
import io
import logging
import os
import ssl
import tempfile
import warnings
from pathlib import Path
from typing import BinaryIO
from urllib.parse import quote_plus, urljoin

import requests
from requests.adapters import HTTPAdapter

from . import __version__

logger = logging.getLogger(__name__)

USER_AGENT = f"Scanbridge/{__version__}"
DEFAULT_TIMEOUT = 100.0
LEGACY_TLS_CIPHERS = "DEFAULT:@SECLEVEL=0"
PKCS12_SUFFIXES = (".pfx", ".p12")


class WebRequestError(Exception):
    """Error from the analysis server or the transport."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ServerUnreachableError(WebRequestError):
    """The server could not be reached (DNS, refused connection, timeout)."""


class CredentialError(ValueError):
    """Credentials that cannot be sent with Basic authentication."""


def escape_query(template: str, *args: str) -> str:
    """Format a relative URL, form-encoding each argument."""
    return template.format(*(quote_plus(str(arg)) for arg in args))


def basic_auth_header(username: str, password: str | None) -> str:
    """
    Build the Basic ``Authorization`` header value.

    Raises:
        CredentialError: if the username contains ':' or either value is not ASCII
    """
    password = password or ""
    if ":" in username:
        raise CredentialError("username cannot contain the ':' character due to basic authentication limitations")
    if not username.isascii() or not password.isascii():
        raise CredentialError("username and password should contain only ASCII characters due to basic authentication limitations")
    token = base64.b64encode(f"{username}:{password}".encode("ascii")).decode("ascii")
    return f"Basic {token}"


def create_ssl_context(cert_path: str | None = None, cert_password: str | None = None) -> ssl.SSLContext:
    """
    SSL context offering TLS 1.0 and later, with an optional client certificate.

    OpenSSL 3 refuses TLS 1.0/1.1 at its default security level, so the
    level is lowered as well. The client certificate must be PEM (certificate
    and key in one file, or the key encrypted with ``cert_password``).

    Raises:
        CredentialError: for PKCS#12 client certificates
    """
    context = ssl.create_default_context()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DeprecationWarning)
        context.minimum_version = ssl.TLSVersion.TLSv1
    context.set_ciphers(LEGACY_TLS_CIPHERS)
    if cert_path:
        if Path(cert_path).suffix.lower() in PKCS12_SUFFIXES:
            raise CredentialError(
                f"The client certificate '{cert_path}' is in PKCS#12 format. "
                "Convert it to PEM, e.g. `openssl pkcs12 -in cert.pfx -out cert.pem`."
            )
        context.load_cert_chain(cert_path, password=cert_password)
    return context


class TLSAdapter(HTTPAdapter):
    """Transport adapter that pins our SSL context on every pool."""

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs):
        self.ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().proxy_manager_for(*args, **kwargs)


class WebClientDownloader:
    """Downloader bound to one server base URL."""

    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        password: str | None = None,
        client_cert_path: str | None = None,
        client_cert_password: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        # Validate before touching the network stack
        auth_header = basic_auth_header(username, password) if username is not None else None

        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = USER_AGENT
        if auth_header:
            self.session.headers["Authorization"] = auth_header

        self.session.mount("https://", TLSAdapter(create_ssl_context(client_cert_path, client_cert_password)))

    def __enter__(self) -> "WebClientDownloader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def get_header(self, name: str) -> str | None:
        return self.session.headers.get(name)

    def get_base_url(self) -> str:
        return self.base_url

    def _url(self, url: str) -> str:
        return urljoin(self.base_url, url)

    def _get(self, url: str, stream: bool = False) -> requests.Response:
        full_url = self._url(url)
        logger.debug("Downloading from %s...", full_url)
        try:
            return self.session.get(full_url, timeout=self.timeout, stream=stream)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ServerUnreachableError(f"Unable to reach {full_url}: {e}") from e
        except requests.RequestException as e:
            raise WebRequestError(f"Request to {full_url} failed: {e}") from e

    @staticmethod
    def _check(response: requests.Response) -> None:
        if response.status_code >= 400:
            raise WebRequestError(
                f"Server error: {response.status_code} - {response.text[:500]}",
                response.status_code,
            )

    def download_resource(self, url: str) -> requests.Response:
        """Return the raw response; the caller interprets the status code."""
        return self._get(url)

    def try_download_if_exists(self, url: str) -> tuple[bool, str | None]:
        """
        Download a text resource.

        Returns:
            (False, None) on HTTP 404, otherwise (True, body)

        Raises:
            WebRequestError: for any other failure
        """
        response = self._get(url)
        if response.status_code == 404:
            logger.debug("Resource not found: %s", response.url)
            return False, None
        self._check(response)
        return True, response.text

    def try_download_file_if_exists(self, url: str, target_path: Path) -> bool:
        """
        Download into a file. Returns False on HTTP 404.

        The body is streamed into a temporary file next to the target, which
        only replaces the target once the download is complete.
        """
        target_path = Path(target_path)
        logger.debug("Downloading file to %s", target_path)
        response = self._get(url, stream=True)
        try:
            if response.status_code == 404:
                return False
            self._check(response)

            fd, tmp_name = tempfile.mkstemp(dir=target_path.parent, suffix=".download")
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as f:
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        f.write(chunk)
                os.replace(tmp_path, target_path)
            except requests.RequestException as e:
                raise WebRequestError(f"Download of {response.url} was interrupted: {e}") from e
            finally:
                tmp_path.unlink(missing_ok=True)
            return True
        finally:
            response.close()

    def download(self, url: str) -> str:
        """Download a text resource; any failure raises."""
        response = self._get(url)
        self._check(response)
        return response.text

    def download_stream(self, url: str) -> BinaryIO:
        """Download a binary resource into memory; any failure raises."""
        response = self._get(url)
        self._check(response)
        return io.BytesIO(response.content)

    def try_download_stream_if_exists(self, url: str) -> BinaryIO | None:
        """Binary variant of ``try_download_if_exists``; None on HTTP 404."""
        response = self._get(url)
        if response.status_code == 404:
            return None
        self._check(response)
        return io.BytesIO(response.content)
