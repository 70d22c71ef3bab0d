"""
Secure transport manager.

Owns the HTTPS client used for upstream API traffic. The client presents
the active client certificate and is rebuilt atomically whenever the
certificate set changes.
"""

import asyncio
import logging
import ssl
import threading
from datetime import datetime, timezone
from typing import Callable
from urllib.parse import urlparse

import httpx

from certkeeper.config import is_development_mode, settings
from certkeeper.core.paths import get_cert_paths
from certkeeper.core.status_recorder import StatusRecorder, get_status_recorder
from certkeeper.models.certificate import CertPaths, TlsConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def resolve_tls_config(paths: CertPaths) -> TlsConfig:
    """
    Inspect the certificate directory and describe what the transport can use.

    Creates the directory when it does not exist yet.
    """
    paths.certs_dir.mkdir(parents=True, exist_ok=True)

    cert_exists = paths.cert_file.exists()
    key_exists = paths.key_file.exists()
    ca_exists = paths.ca_file.exists()
    is_valid = cert_exists and key_exists

    if not is_valid:
        logger.warning(f"No client certificate in {paths.certs_dir}, using system trust store only")

    return TlsConfig(
        cert_path=paths.cert_file if cert_exists else None,
        key_path=paths.key_file if key_exists else None,
        ca_path=paths.ca_file if ca_exists else None,
        is_valid=is_valid,
        use_default=not is_valid,
    )


def build_ssl_context(config: TlsConfig) -> tuple[ssl.SSLContext, bool]:
    """
    Build a verifying SSL context for a TLS configuration.

    Returns:
        Tuple of (context, uses_client_certificate). Falls back to the
        default context when the certificate files cannot be loaded.
    """
    context = ssl.create_default_context()
    if config.use_default:
        return context, False

    try:
        if config.ca_path:
            context.load_verify_locations(cafile=str(config.ca_path))
        context.load_cert_chain(certfile=str(config.cert_path), keyfile=str(config.key_path))
    except (ssl.SSLError, OSError) as e:
        logger.error(f"Failed to load client certificate, using default TLS settings: {e}")
        return ssl.create_default_context(), False

    return context, True


def build_development_context(config: TlsConfig) -> ssl.SSLContext | None:
    """
    SSL context that additionally trusts the local certificate set.

    Only used for requests to the configured API host in development mode.
    """
    if config.use_default:
        return None

    context, _ = build_ssl_context(config)
    try:
        context.load_verify_locations(cafile=str(config.cert_path))
    except (ssl.SSLError, OSError) as e:
        logger.warning(f"Cannot trust local certificate for development: {e}")
        return None
    return context


class SecureTransportHandle:
    """One fully built HTTPS client and the configuration it was built from."""

    def __init__(self, client: httpx.Client, config: TlsConfig, client_certificate: bool):
        self.client = client
        self.config = config
        self.client_certificate = client_certificate
        self.created_at = datetime.now(timezone.utc)
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.client.close()
            self.closed = True


class SecureTransportManager:
    """
    Holds the single live SecureTransportHandle.

    get() and reload() are serialized by a re-entrant lock, so readers
    always see either the previous or the new handle.
    """

    def __init__(
        self,
        paths_factory: Callable[[], CertPaths] = get_cert_paths,
        recorder: StatusRecorder | None = None,
    ):
        self._paths_factory = paths_factory
        self._recorder = recorder
        self._lock = threading.RLock()
        self._handle: SecureTransportHandle | None = None

    @property
    def recorder(self) -> StatusRecorder:
        return self._recorder or get_status_recorder()

    def _build(self) -> SecureTransportHandle:
        config = resolve_tls_config(self._paths_factory())
        context, client_certificate = build_ssl_context(config)

        mounts = {}
        if is_development_mode() and client_certificate:
            dev_context = build_development_context(config)
            api_host = urlparse(settings.api_base_url).netloc
            if dev_context is not None and api_host:
                mounts[f"https://{api_host}"] = httpx.HTTPTransport(verify=dev_context)
                logger.info(f"Development mode: trusting local certificate for {api_host}")

        client = httpx.Client(verify=context, mounts=mounts, timeout=DEFAULT_TIMEOUT)

        if client_certificate:
            logger.info(f"Secure transport ready with client certificate {config.cert_path}")
        else:
            logger.info("Secure transport ready with default TLS settings")

        return SecureTransportHandle(client, config, client_certificate)

    def get(self) -> SecureTransportHandle:
        """Current handle, built on first use."""
        with self._lock:
            if self._handle is None:
                self._handle = self._build()
            return self._handle

    def reload(self) -> SecureTransportHandle:
        """Replace the current handle with one built from the files on disk."""
        with self._lock:
            new_handle = self._build()
            old_handle, self._handle = self._handle, new_handle
            if old_handle is not None:
                old_handle.close()
            logger.info("Secure transport reloaded")
            return new_handle

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None

    def secure_request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send a request on the current handle.

        HTTPS requests are counted in the status recorder: any response
        is a success, a transport error is a failure and is re-raised.
        """
        is_https = url.startswith("https:")
        client = self.get().client

        try:
            response = client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            if is_https:
                self.recorder.record_failure(str(e) or type(e).__name__)
            raise

        if is_https:
            self.recorder.record_success()
        return response

    async def secure_fetch(self, method: str, url: str, **kwargs) -> httpx.Response:
        """secure_request for async callers."""
        return await asyncio.to_thread(self.secure_request, method, url, **kwargs)


# Singleton instance
_transport_manager: SecureTransportManager | None = None


def get_transport_manager() -> SecureTransportManager:
    """Get the global secure transport manager instance."""
    global _transport_manager
    if _transport_manager is None:
        _transport_manager = SecureTransportManager()
    return _transport_manager
