"""A local server that emulates the GCP instance metadata service."""

from __future__ import annotations

import logging
import os
import threading
import urllib.parse
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from meshcreds.mds import Metadata
from meshcreds.rest import TokenSource

_META_PREFIX = "/computeMetadata/v1"
_PROJECT_ID_PATH = _META_PREFIX + "/project/project-id"
_PROJECT_NUMBER_PATH = _META_PREFIX + "/project/numeric-project-id"
_ZONE_PATH = _META_PREFIX + "/instance/zone"
_SERVICE_ACCOUNTS_PREFIX = _META_PREFIX + "/instance/service-accounts/"

_DEFAULT_ADDR = "127.0.0.1:15021"
_ADVERTISED_HOST = "localhost:15021"
_TOKEN_BODY = '{{"access_token": "{}","expires_in":3599,"token_type":"Bearer"}}'

_log = logging.getLogger(__name__)


@dataclass
class MDSResponse:
    """Status, headers and body of an answer from the emulated metadata server."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def _header(headers: Any, name: str) -> str:
    if headers is None:
        return ""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return ""


class _Server(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], mdsd: MDSD) -> None:
        super().__init__(address, _Handler)
        self.mdsd = mdsd


class _Handler(BaseHTTPRequestHandler):
    server: _Server

    def _dispatch(self) -> None:
        response = self.server.mdsd.handle(self.path, self.headers)
        self.send_response(response.status)
        for key, value in response.headers.items():
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        self.wfile.write(response.body)

    do_GET = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_DELETE = _dispatch

    def log_message(self, format: str, *args: Any) -> None:
        _log.debug("%s " + format, self.client_address[0], *args)


@dataclass
class MDSD:
    """Metadata server emulator handing out tokens from configured providers."""

    gcp_token_provider: TokenSource | None = None
    token_provider: TokenSource | None = None
    metadata: Metadata = field(default_factory=Metadata)
    addr: str = ""
    _server: _Server | None = field(default=None, init=False, repr=False)
    _thread: threading.Thread | None = field(default=None, init=False, repr=False)

    def start(self) -> None:
        """Advertise the emulator in GCE_METADATA_HOST and serve on addr."""
        os.environ["GCE_METADATA_HOST"] = _ADVERTISED_HOST
        if self._server is not None:
            return
        if not self.addr:
            self.addr = _DEFAULT_ADDR
        host, _, port = self.addr.rpartition(":")
        server = _Server((host or "127.0.0.1", int(port)), self)
        bound_host, bound_port = server.server_address[:2]
        self.addr = f"{bound_host}:{bound_port}"
        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop serving, if the server is running."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None

    def handle(self, request_uri: str, headers: Any = None) -> MDSResponse:
        """Answer one request, given its request URI (path and query) and headers."""
        path = request_uri.partition("?")[0]
        if not path.startswith(_META_PREFIX + "/"):
            _log.info("DefaultCredentials check %s", dict(headers.items()) if headers else {})
            return MDSResponse(200, {"Metadata-Flavor": "Google"})
        return self._handle_mds(request_uri, path, headers)

    def _handle_mds(self, request_uri: str, path: str, headers: Any) -> MDSResponse:
        flavor = _header(headers, "Metadata-Flavor")
        if not flavor and request_uri != "/":
            return MDSResponse(
                403, {"Content-Type": "text/plain; charset=utf-8"}, b"Forbidden\n"
            )

        response_headers = {"Metadata-Flavor": "Google"}
        _log.info("MDS %s", request_uri)

        project = self.metadata.project
        if request_uri == _PROJECT_ID_PATH:
            return MDSResponse(200, response_headers, project.project_id.encode())
        if request_uri == _PROJECT_NUMBER_PATH:
            return MDSResponse(200, response_headers, str(project.numeric_project_id).encode())
        if request_uri == _ZONE_PATH:
            return MDSResponse(200, response_headers, self.metadata.instance.zone.encode())

        if path.startswith(_SERVICE_ACCOUNTS_PREFIX):
            return self._service_account(request_uri, path, response_headers)

        return MDSResponse(404, response_headers)

    def _service_account(self, request_uri: str, path: str,
                         headers: dict[str, str]) -> MDSResponse:
        parts = path.split("/")
        if len(parts) <= 6:
            return MDSResponse(500, headers)
        user, kind = parts[5], parts[6]
        _log.info("MDS %s user=%s kind=%s", request_uri, user, kind)

        if kind == "email":
            return MDSResponse(200, headers, self._email(user).encode())

        if kind == "token":
            if self.gcp_token_provider is None:
                return MDSResponse(500, headers)
            try:
                token = self.gcp_token_provider.get_token("")
            except Exception as exc:
                _log.warning("MDSTokenError err=%s", exc)
                return MDSResponse(500, headers)
            return MDSResponse(200, headers, _TOKEN_BODY.format(token).encode())

        if kind == "identity":
            query = urllib.parse.urlsplit(request_uri).query
            audiences = urllib.parse.parse_qs(query, keep_blank_values=True).get("audience")
            if not audiences or self.token_provider is None:
                return MDSResponse(500, headers)
            try:
                token = self.token_provider.get_token(audiences[0])
            except Exception as exc:
                _log.warning("MDSTokenError err=%s aud=%s", exc, audiences)
                return MDSResponse(500, headers)
            return MDSResponse(200, headers, token.encode())

        return MDSResponse(500, headers)

    def _email(self, user: str) -> str:
        accounts = self.metadata.instance.service_accounts
        match = accounts.get(user)
        if match is not None and match.email:
            return match.email
        return next((sa.email for sa in accounts.values() if sa.email), "")


def new_server() -> MDSD:
    """Return an emulator with no token providers and empty metadata."""
    return MDSD()