"""
Base target server interface and common functionality.

This module defines the abstract base class every target server integration
implements: reading current construct membership, granting and revoking it,
and managing the session. It also carries the shared HTTP client with SSL and
authentication handling.
"""

import json
import os
import ssl
import time
import base64
import logging
import tempfile
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urljoin, urlencode
from http.client import HTTPSConnection, HTTPConnection

from ldap_rtc_sync.errors import ServerConnectionError
from ldap_rtc_sync.models import Construct, Identity

logger = logging.getLogger(__name__)


class TargetAPIError(Exception):
    """Base exception for target server API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TargetAuthenticationError(TargetAPIError):
    """Raised when authentication to the target server fails."""
    pass


class TargetConnectionError(TargetAPIError, ConnectionError):
    """Raised when the target server cannot be reached."""
    pass


class TargetServerBase(ABC):
    """
    Abstract base class for target server integrations.

    Subclasses implement the reader and writer operations for each construct
    kind; this class provides the HTTP plumbing and session lifecycle.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize target server client.

        Args:
            config: Server connection settings (name, base_url, auth, TLS options)
        """
        self.config = config
        self.name = config['name']
        self.base_url = config['base_url']
        self.auth_config = dict(config.get('auth') or {})
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None

        self.auth_headers = {}
        self.authenticated = False
        self._token_expires_at = None

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

        keystore_file = self.config.get('keystore_file')
        if keystore_file:
            self._load_client_cert(keystore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom truststore/CA certificates (PEM, JKS or PKCS12)."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")

            elif truststore_type == 'JKS':
                import jks

                keystore = jks.KeyStore.load(truststore_file, truststore_password or '')
                for alias, entry in keystore.certs.items():
                    self.ssl_context.load_verify_locations(cadata=entry.cert)
                    logger.debug(f"Trusted certificate '{alias}' from {truststore_file}")
                logger.info(f"Loaded JKS truststore: {truststore_file}")

            elif truststore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata=b'\n'.join(ca_certs).decode('ascii'))
                    logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

            else:
                raise TargetAPIError(f"Unsupported truststore type: {truststore_type}")

        except ImportError as e:
            logger.error(f"Truststore type {truststore_type} needs an optional library: {e}")
            raise TargetAPIError(f"{truststore_type} truststore support is not installed: {e}")
        except TargetAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise TargetAPIError(f"Truststore loading failed: {e}")

    def _load_client_cert(self, keystore_file: str):
        """Load client certificate for mutual TLS."""
        keystore_type = self.config.get('keystore_type', 'PEM').upper()
        keystore_password = self.config.get('keystore_password')

        try:
            if keystore_type == 'PEM':
                self.ssl_context.load_cert_chain(
                    keystore_file,
                    keyfile=self.config.get('key_file'),
                    password=keystore_password
                )
                logger.info(f"Loaded PEM client certificate: {keystore_file}")

            elif keystore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(keystore_file, 'rb') as f:
                    p12_data = f.read()

                private_key, certificate, _ = pkcs12.load_key_and_certificates(
                    p12_data, keystore_password.encode() if keystore_password else None
                )
                if not (private_key and certificate):
                    raise TargetAPIError(f"No key and certificate pair in {keystore_file}")

                # ssl only loads client certificates from files
                with tempfile.NamedTemporaryFile(mode='wb', delete=False, suffix='.pem') as cert_file:
                    cert_file.write(certificate.public_bytes(serialization.Encoding.PEM))
                    cert_path = cert_file.name
                with tempfile.NamedTemporaryFile(mode='wb', delete=False, suffix='.pem') as key_file:
                    key_file.write(private_key.private_bytes(
                        encoding=serialization.Encoding.PEM,
                        format=serialization.PrivateFormat.PKCS8,
                        encryption_algorithm=serialization.NoEncryption()
                    ))
                    key_path = key_file.name

                try:
                    self.ssl_context.load_cert_chain(cert_path, key_path)
                finally:
                    os.unlink(cert_path)
                    os.unlink(key_path)
                logger.info(f"Loaded PKCS12 client certificate: {keystore_file}")

            else:
                raise TargetAPIError(f"Unsupported keystore type: {keystore_type}")

        except TargetAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load client certificate {keystore_file}: {e}")
            raise TargetAPIError(f"Client certificate loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
                logger.debug(f"Configured Basic authentication for {self.name}")
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method == 'oauth2':
            if not all(self.auth_config.get(k) for k in ('client_id', 'client_secret', 'token_url')):
                logger.error(f"OAuth2 auth configured but missing required fields "
                             f"(client_id, client_secret, token_url) for {self.name}")
            else:
                logger.debug(f"OAuth2 authentication configured for {self.name}")

        elif auth_method in ('mtls', 'mutual_tls'):
            logger.debug(f"Mutual TLS authentication configured for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _oauth2_get_token(self) -> bool:
        """
        Retrieve OAuth2 access token using client credentials flow.

        Returns:
            True if token was successfully obtained
        """
        client_id = self.auth_config.get('client_id')
        client_secret = self.auth_config.get('client_secret')
        token_url = self.auth_config.get('token_url')
        scope = self.auth_config.get('scope', '')

        if not all([client_id, client_secret, token_url]):
            logger.error(f"OAuth2 configuration incomplete for {self.name}")
            return False

        parsed_token_url = urlparse(token_url)
        if parsed_token_url.scheme == 'https':
            token_conn = HTTPSConnection(parsed_token_url.netloc, context=self.ssl_context, timeout=self.timeout)
        else:
            token_conn = HTTPConnection(parsed_token_url.netloc, timeout=self.timeout)

        token_data = {
            'grant_type': 'client_credentials',
            'client_id': client_id,
            'client_secret': client_secret
        }
        if scope:
            token_data['scope'] = scope

        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', parsed_token_url.path or '/', urlencode(token_data), {
                'Content-Type': 'application/x-www-form-urlencoded',
                'Accept': 'application/json'
            })
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')

            if response.status != 200:
                logger.error(f"OAuth2 token request failed for {self.name}: {response.status} {response.reason}")
                return False

            token_response = json.loads(response_data)
            access_token = token_response.get('access_token')
            if not access_token:
                logger.error(f"OAuth2 response missing access_token for {self.name}")
                return False

            self.auth_headers['Authorization'] = f"Bearer {access_token}"
            expires_in = token_response.get('expires_in')
            if expires_in:
                self._token_expires_at = time.time() + int(expires_in) - 60
            logger.info(f"Successfully obtained OAuth2 token for {self.name}")
            return True

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")
            return False
        except (ConnectionError, OSError) as e:
            logger.error(f"OAuth2 token request error for {self.name}: {e}")
            return False
        finally:
            token_conn.close()

    def _is_oauth2_token_valid(self) -> bool:
        """Check if OAuth2 token is still valid."""
        if self._token_expires_at is None:
            return 'Authorization' in self.auth_headers
        return time.time() < self._token_expires_at

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                headers: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make HTTP request to the target server.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API endpoint path (relative to base_url)
            body: Request body data, sent as JSON
            headers: Additional headers

        Returns:
            Parsed JSON response data ({} for an empty body)

        Raises:
            TargetAuthenticationError: On HTTP 401 that a token refresh did not fix
            TargetConnectionError: If the server cannot be reached
            TargetAPIError: On any other HTTP error or malformed response
        """
        full_path = urljoin(self.base_path + '/', path.lstrip('/'))

        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.auth_headers)
        if headers:
            request_headers.update(headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        refreshed = False
        while True:
            try:
                conn = self._get_connection()
                logger.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, request_body, request_headers)
                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
            except (ConnectionError, OSError) as e:
                self.close_connection()
                raise TargetConnectionError(f"Connection error to {self.name}: {e}")

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401:
                if self.auth_config.get('method', '').lower() == 'oauth2' and not refreshed:
                    logger.info(f"401 error received, attempting to refresh OAuth2 token for {self.name}")
                    refreshed = True
                    if self._oauth2_get_token():
                        request_headers.update(self.auth_headers)
                        continue
                raise TargetAuthenticationError(f"Authentication failed for {self.name}", status_code=401)

            if response.status >= 400:
                raise TargetAPIError(f"HTTP {response.status}: {response.reason} ({method} {full_path})",
                                     status_code=response.status)

            try:
                return json.loads(response_data) if response_data else {}
            except json.JSONDecodeError as e:
                raise TargetAPIError(f"Invalid JSON response from {self.name}: {e}")

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def authenticate(self) -> bool:
        """
        Perform any additional authentication steps (e.g., OAuth2 token retrieval).

        Returns:
            True if authentication successful
        """
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'oauth2':
            if self._is_oauth2_token_valid():
                logger.debug(f"OAuth2 token still valid for {self.name}")
                return True
            return self._oauth2_get_token()

        if auth_method in ('basic', 'token', 'bearer', 'mtls', 'mutual_tls', ''):
            return True

        logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")
        return False

    def connect(self) -> 'TargetServerBase':
        """
        Open a session with the server.

        Raises:
            ServerConnectionError: If authentication or the session check fails
        """
        try:
            if not self.authenticate():
                raise ServerConnectionError(f"Authentication failed for server {self.name}")
            self.verify_session()
        except ServerConnectionError:
            self.close_connection()
            raise
        except Exception as e:
            self.close_connection()
            raise ServerConnectionError(f"Cannot connect to server {self.name}: {e}")
        self.authenticated = True
        logger.info(f"Connected to server {self.name} ({self.base_url})")
        return self

    def disconnect(self):
        """Release the session; safe to call more than once."""
        self.authenticated = False
        self.close_connection()
        logger.debug(f"Disconnected from server {self.name}")

    def verify_session(self):
        """Hook for a cheap authenticated call proving the session works."""
        pass

    @abstractmethod
    def current_members(self, construct: Construct) -> List[Identity]:
        """
        Identities currently holding the construct on the server.

        Raises:
            ServerQueryError: If the state cannot be read
        """
        pass

    @abstractmethod
    def grant(self, construct: Construct, identity: Identity) -> bool:
        """
        Give the identity the construct; granting an already-held construct succeeds.

        Returns:
            True if successful
        """
        pass

    @abstractmethod
    def revoke(self, construct: Construct, identity: Identity) -> bool:
        """
        Take the construct away from the identity; revoking an absent one succeeds.

        Returns:
            True if successful
        """
        pass

    def license_capacity(self, license_name: str) -> Optional[int]:
        """Seat count of a license pool as reported by the server, None if unknown."""
        return None
