"""
Base directory client interface and common HTTP functionality.

This module defines the abstract base class that directory integrations must
implement, along with the shared HTTP client plumbing: SSL context setup,
token authentication, JSON encoding, per-thread connections and cooperative
cancellation.
"""

import json
import ssl
import socket
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Set, Tuple, Union
from urllib.parse import urlparse, urljoin
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from team_sync.membership import Role

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """Base exception for directory service errors."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class DirectoryAuthenticationError(DirectoryError):
    """Raised when the directory rejects our credentials."""
    pass


class SyncCancelled(DirectoryError):
    """Raised by directory calls once the run has been cancelled."""
    pass


class DirectoryClient(ABC):
    """
    Abstract directory capability used by the reconciler.

    Implementations must be safe to call from several threads at once.
    """

    @abstractmethod
    def list_team_members(self, org: str, team: str, role: Role) -> Set[str]:
        """
        List identities holding ``role`` in the given team.

        Raises:
            DirectoryError: If the listing fails
        """

    @abstractmethod
    def list_org_admins(self, org: str) -> Set[str]:
        """
        List the administrators of an organization.

        Raises:
            DirectoryError: If the listing fails
        """

    @abstractmethod
    def upsert_membership(self, org: str, team: str, identity: str, role: Role) -> None:
        """
        Add ``identity`` to the team, or change its role if already present.

        Raises:
            DirectoryError: If the change is rejected
        """

    @abstractmethod
    def remove_membership(self, org: str, team: str, identity: str) -> None:
        """
        Remove ``identity`` from the team.

        Raises:
            DirectoryError: If the change is rejected
        """

    def close(self) -> None:
        """Release any resources held by the client."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class HTTPDirectoryClient(DirectoryClient):
    """
    Directory client base for JSON-over-HTTP services.

    Handles connection management, SSL configuration and bearer-token
    authentication. Subclasses implement the directory operations on top of
    :meth:`request`.
    """

    DEFAULT_TIMEOUT = 30

    def __init__(self, config: Dict[str, Any], cancel_event: Optional[threading.Event] = None):
        """
        Initialize the HTTP directory client.

        Args:
            config: Directory configuration (``base_url``, ``token``,
                ``verify_ssl``, ``ca_file``, ``timeout_seconds``)
            cancel_event: Event that, once set, makes every call raise
                SyncCancelled
        """
        self.config = config
        self.base_url = config['base_url']
        self.token = config.get('token')
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout_seconds', self.DEFAULT_TIMEOUT)
        self.cancel_event = cancel_event or threading.Event()

        self.parsed_url = urlparse(self.base_url)
        if self.parsed_url.scheme not in ('http', 'https') or not self.parsed_url.netloc:
            raise DirectoryError(f"Invalid directory base URL: {self.base_url}")
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        # http.client connections are not thread-safe, keep one per thread
        self._local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()
        self._watcher_stop: Optional[threading.Event] = None

        self.ssl_context = None
        self.auth_headers: Dict[str, str] = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_file = self.config.get('ca_file')
        if ca_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_file)
                logger.info(f"Loaded PEM CA bundle: {ca_file}")
            except (OSError, ssl.SSLError) as e:
                raise DirectoryError(f"Failed to load CA bundle {ca_file}: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        if self.token:
            self.auth_headers['Authorization'] = f"Bearer {self.token}"
            logger.debug(f"Configured bearer token authentication for {self.host}")
        else:
            logger.warning(f"No token configured for {self.host}, requests will be anonymous")

    def check_cancelled(self):
        if self.cancel_event.is_set():
            raise SyncCancelled("Sync cancelled")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create the HTTP connection for the current thread."""
        connection = getattr(self._local, 'connection', None)
        if connection is not None:
            return connection

        if self.parsed_url.scheme == 'https':
            connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            connection = HTTPConnection(self.host, timeout=self.timeout)

        self._local.connection = connection
        with self._connections_lock:
            self._connections.append(connection)
            self._start_cancel_watcher()
        return connection

    def _start_cancel_watcher(self):
        """Start the thread that interrupts in-flight requests on cancellation."""
        if self._watcher_stop is not None:
            return
        self._watcher_stop = threading.Event()
        threading.Thread(target=self._watch_cancel, args=(self._watcher_stop,),
                         name='team-sync-cancel', daemon=True).start()

    def _watch_cancel(self, stop: threading.Event):
        while not self.cancel_event.wait(0.1):
            if stop.is_set():
                return
        logger.debug(f"Sync cancelled, interrupting requests to {self.host}")
        with self._connections_lock:
            connections = list(self._connections)
        for connection in connections:
            self._interrupt(connection)

    def _interrupt(self, connection: Union[HTTPSConnection, HTTPConnection]):
        """Shut down the connection's socket so a blocked read returns immediately."""
        sock = connection.sock
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Socket to {self.host} already closed: {e}")

    def _drop_connection(self):
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            return
        self._local.connection = None
        with self._connections_lock:
            if connection in self._connections:
                self._connections.remove(connection)
        connection.close()

    def build_path(self, path: str) -> str:
        """Resolve an API path (or absolute URL on the same host) to a request path."""
        parsed = urlparse(path)
        if parsed.netloc:
            if parsed.netloc != self.host:
                raise DirectoryError(f"Refusing to follow link to foreign host {parsed.netloc}")
            return parsed.path + (f"?{parsed.query}" if parsed.query else '')
        return urljoin(self.base_path + '/', path.lstrip('/'))

    def default_headers(self) -> Dict[str, str]:
        """Headers sent with every request. Subclasses may extend."""
        return {'Accept': 'application/json'}

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                headers: Optional[Dict] = None) -> Tuple[int, Dict[str, str], Any]:
        """
        Make an HTTP request to the directory service.

        Args:
            method: HTTP method (GET, PUT, DELETE, ...)
            path: API path relative to base_url, or an absolute URL on the same host
            body: JSON request body
            headers: Additional headers

        Returns:
            Tuple of (status, lower-cased response headers, parsed JSON body or None)

        Raises:
            SyncCancelled: If the run was cancelled before or during the request
            DirectoryAuthenticationError: On 401 responses
            DirectoryError: On transport failures and other 4xx/5xx responses
        """
        self.check_cancelled()

        full_path = self.build_path(path)

        request_headers = self.default_headers()
        request_headers.update(self.auth_headers)
        if headers:
            request_headers.update(headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)
            # Cancelled while connecting, before the watcher could see the socket
            if self.cancel_event.is_set():
                self._interrupt(conn)
            response = conn.getresponse()
            # Error pages from proxies are not always UTF-8
            response_data = response.read().decode('utf-8', errors='replace')
            response_headers = {k.lower(): v for k, v in response.getheaders()}
        except (HTTPException, OSError) as e:
            # The connection state is unknown after a transport error
            self._drop_connection()
            if self.cancel_event.is_set():
                raise SyncCancelled(f"Sync cancelled during {method} {full_path}") from e
            raise DirectoryError(f"Connection error to {self.host}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status == 401:
            raise DirectoryAuthenticationError(f"Authentication failed for {self.host}", response.status)
        if response.status >= 400:
            raise DirectoryError(
                f"HTTP {response.status} {response.reason} for {method} {full_path}: "
                f"{self._error_detail(response_data)}",
                response.status,
            )

        if not response_data:
            return response.status, response_headers, None
        try:
            return response.status, response_headers, json.loads(response_data)
        except json.JSONDecodeError as e:
            raise DirectoryError(f"Invalid JSON response from {self.host}: {e}")

    def _error_detail(self, response_data: str) -> str:
        try:
            payload = json.loads(response_data)
        except (TypeError, ValueError):
            return response_data.strip()[:200]
        if isinstance(payload, dict) and payload.get('message'):
            return str(payload['message'])
        return response_data.strip()[:200]

    def close(self):
        """Close every HTTP connection opened by this client."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
            if self._watcher_stop is not None:
                self._watcher_stop.set()
                self._watcher_stop = None
        for connection in connections:
            try:
                connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection to {self.host}: {e}")
        self._local = threading.local()
