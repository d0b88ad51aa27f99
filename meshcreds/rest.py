"""Minimal REST client for Kubernetes-style APIs that exchange raw JSON."""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
import weakref
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import requests
from cryptography import x509


@runtime_checkable
class TokenSource(Protocol):
    """Anything that returns bearer tokens for a given audience."""

    def get_token(self, audience: str) -> str:
        """Return a token for the audience; an empty audience asks for an access token."""


class RestError(Exception):
    """A REST call answered with a status outside the 2xx range."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"K8Service error {status} {body}")
        self.status = status
        self.body = body


def _remove_file(path: str) -> None:
    with contextlib.suppress(OSError):
        os.unlink(path)


@dataclass(eq=False)
class Dest:
    """A remote server: base address, credentials and trusted CA certificates."""

    addr: str = ""
    token_provider: TokenSource | None = None
    trust_pems: list[bytes] = field(default_factory=list)
    _session: requests.Session | None = field(default=None, init=False, repr=False)
    _bundle_cleanup: weakref.finalize | None = field(default=None, init=False, repr=False)

    def add_trust_pem(self, pem: bytes | str) -> None:
        """Trust the PEM encoded certificates for TLS connections to this server."""
        data = pem.encode("ascii") if isinstance(pem, str) else bytes(pem)
        x509.load_pem_x509_certificates(data)
        self.trust_pems.append(data)
        self._session = None

    def rest_client(self, group: str, version: str) -> RESTRequest:
        """Return a request bound to this destination."""
        return RESTRequest(dest=self)

    def session(self) -> requests.Session:
        """Return the HTTP session for this server, verifying against trusted CAs."""
        if self._session is None:
            session = requests.Session()
            if self.trust_pems:
                session.verify = self._write_bundle()
            self._session = session
        return self._session

    def _write_bundle(self) -> str:
        if self._bundle_cleanup is not None:
            self._bundle_cleanup()
        with tempfile.NamedTemporaryFile("wb", suffix=".pem", delete=False) as fh:
            for pem in self.trust_pems:
                fh.write(pem.rstrip(b"\n") + b"\n")
        self._bundle_cleanup = weakref.finalize(self, _remove_file, fh.name)
        return fh.name


@dataclass
class RESTRequest:
    """A REST request addressing a namespaced resource or an explicit path."""

    namespace: str = ""
    kind: str = ""
    name: str = ""
    path: str = ""
    spec: bytes | None = None
    query: str = ""
    method: str = ""
    dest: Dest | None = None

    def post(self) -> RESTRequest:
        """Use POST for this request."""
        self.method = "POST"
        return self

    def _resource_path(self) -> str:
        if self.path:
            path = self.path
        else:
            if self.namespace:
                path = f"/api/v1/namespaces/{self.namespace}/{self.kind}s"
            else:
                path = "/apis/" + self.kind
            if self.name:
                path = path + "/" + self.name
        return path + self.query

    def http_request(self, dest: Dest) -> requests.PreparedRequest:
        """Build the HTTP request for dest, with a bearer token when one is available."""
        method = self.method or ("GET" if self.spec is None else "POST")
        headers: dict[str, str] = {}
        if self.spec is not None:
            headers["content-type"] = "application/json"
        if dest.token_provider is not None:
            try:
                token: str | None = dest.token_provider.get_token(dest.addr)
            except Exception:
                token = None
            if token is not None:
                headers["authorization"] = "Bearer " + token
        return requests.Request(
            method, dest.addr + self._resource_path(), headers=headers, data=self.spec
        ).prepare()

    def do(self, dest: Dest | None = None) -> bytes:
        """Send the request and return the body; raise RestError on a non-2xx status."""
        target = dest if dest is not None else self.dest
        if target is None:
            raise ValueError("no destination for the request")
        res = target.session().send(self.http_request(target))
        data = res.content
        if not 200 <= res.status_code < 300:
            raise RestError(res.status_code, data.decode("utf-8", "replace"))
        return data


def load(dest: Dest, kind: str, namespace: str, name: str) -> Any:
    """Fetch a resource such as a configmap or secret and return the decoded JSON."""
    request = RESTRequest(namespace=namespace, kind=kind, name=name)
    res = dest.session().send(request.http_request(dest))
    return json.loads(res.content)