"""GCP integration: credentials files, GKE and Hub cluster discovery, secrets."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
from dataclasses import dataclass, field, fields
from typing import Any

import requests

from meshcreds.rest import Dest, TokenSource

_DEFAULT_TOKEN_URL = "https://accounts.google.com/o/oauth2/token"
_CONTAINER_API = "https://container.googleapis.com/v1"
_HUB_API = "https://gkehub.googleapis.com/v1"
_SECRETS_API = "https://secretmanager.googleapis.com/v1"
_CONTAINER_LINK_PREFIX = "//container.googleapis.com"
_MAX_TOKEN_RESPONSE = 1 << 20
_INT32_MAX = 2**31 - 1
_INTEGER = re.compile(r"-?(0|[1-9][0-9]*)")

_log = logging.getLogger(__name__)


def _get(data: Any, name: str) -> Any:
    if not isinstance(data, dict):
        return None
    if name in data:
        return data[name]
    wanted = name.lower()
    for key, value in data.items():
        if str(key).lower() == wanted:
            return value
    return None


def _str(data: Any, name: str) -> str:
    value = _get(data, name)
    return value if isinstance(value, str) else ""


def _strings(data: Any, name: str) -> list[str]:
    value = _get(data, name)
    return [str(v) for v in value] if isinstance(value, list) else []


def _labels(data: Any, name: str) -> dict[str, str]:
    value = _get(data, name)
    return {str(k): str(v) for k, v in value.items()} if isinstance(value, dict) else {}


def _b64_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if not isinstance(value, str):
        raise ValueError("expected a base64 encoded string")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 data: {exc}") from exc


def _json_key(attribute: str) -> str:
    """Map an attribute name to its key in a credentials file (*_url is stored as *_uri)."""
    if attribute.endswith("_url"):
        return attribute[: -len("url")] + "uri"
    return attribute


def parse_expires_in(value: Any) -> int:
    """Decode an OAuth2 expires_in value given as a number or a numeric string.

    None counts as 0; values above the int32 range are clamped to its maximum.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError("expires_in must be a number")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and _INTEGER.fullmatch(value):
        number = int(value)
    else:
        raise ValueError(f"invalid expires_in value {value!r}")
    return min(number, _INT32_MAX)


@dataclass
class OAuth2Source:
    """A credentials file: a service account key or gcloud user credentials."""

    type: str = ""
    client_email: str = ""
    private_key_id: str = ""
    private_key: str = ""
    token_url: str = ""
    project_id: str = ""
    client_secret: str = ""
    client_id: str = ""
    refresh_token: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> OAuth2Source:
        """Build from the decoded JSON of a credentials file."""
        values = {f.name: _str(data, _json_key(f.name)) for f in fields(cls)}
        return cls(**values)

    def get_token(self, audience: str) -> str:
        """Use the refresh token to get an ID token for audience, else an access token."""
        form = {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "response_type": "id_token",
            "audience": audience,
        }
        res = requests.post(
            self.token_url or _DEFAULT_TOKEN_URL,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        body = res.content[:_MAX_TOKEN_RESPONSE]
        try:
            doc = json.loads(body)
            if not isinstance(doc, dict):
                raise ValueError("response is not a JSON object")
            parse_expires_in(doc.get("expires_in"))
        except ValueError as exc:
            raise ValueError(f"oauth2: cannot parse json: {exc}") from exc

        error_code = _str(doc, "error")
        if error_code:
            raise ValueError(f"Error {error_code} {_str(doc, 'error_description')}")

        id_token = _str(doc, "id_token")
        if not audience or not id_token:
            return _str(doc, "access_token")
        return id_token


@dataclass
class Cluster:
    """The parts of a GKE cluster description used to connect to it."""

    name: str = ""
    ca_certificate: bytes = b""
    location: str = ""
    endpoint: str = ""
    resource_labels: dict[str, str] = field(default_factory=dict)
    cluster_ipv4_cidr: str = ""
    services_ipv4_cidr: str = ""
    locations: list[str] = field(default_factory=list)
    network: str = ""
    subnetwork: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Cluster:
        """Build from a GKE API cluster resource; the CA is base64 decoded."""
        master_auth = _get(data, "masterAuth")
        network_config = _get(data, "networkConfig")
        return cls(
            name=_str(data, "name"),
            ca_certificate=_b64_bytes(_get(master_auth, "clusterCaCertificate")),
            location=_str(data, "location"),
            endpoint=_str(data, "endpoint"),
            resource_labels=_labels(data, "resourceLabels"),
            cluster_ipv4_cidr=_str(data, "clusterIpv4Cidr"),
            services_ipv4_cidr=_str(data, "servicesIpv4Cidr"),
            locations=_strings(data, "locations"),
            network=_str(network_config, "network"),
            subnetwork=_str(network_config, "subnetwork"),
        )


@dataclass
class HubCluster:
    """A membership registered in GKE Hub."""

    resource_link: str = ""
    state: str = ""
    issuer: str = ""
    workload_identity_pool: str = ""
    identity_provider: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> HubCluster:
        """Build from a GKE Hub membership resource."""
        gke = _get(_get(data, "endpoint"), "gkeCluster")
        authority = _get(data, "authority")
        return cls(
            resource_link=_str(gke, "resourceLink"),
            state=_str(_get(data, "state"), "code"),
            issuer=_str(authority, "issuer"),
            workload_identity_pool=_str(authority, "workloadIdentityPool"),
            identity_provider=_str(authority, "identityProvider"),
            labels=_labels(data, "labels"),
        )


def find_default_credentials() -> OAuth2Source | None:
    """Load application default credentials, if a credentials file is found."""
    path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "")
    if not path:
        path = os.environ.get("HOME", "") + "/.config/gcloud/application_default_credentials.json"
        if not os.path.exists(path):
            return None
    try:
        with open(path, "rb") as fh:
            raw = fh.read()
    except OSError:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        data = {}
    return OAuth2Source.from_dict(data)


def _check(res: requests.Response, prefix: str = "") -> None:
    if res.status_code != 200:
        raise requests.HTTPError(f"{prefix}{res.status_code} {res.text}", response=res)


@dataclass
class GCPAuth:
    """Discovers GKE clusters of a project using an access token source."""

    token_provider: TokenSource | None = None
    project_id: str = ""
    debug: bool = False
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def provision(self) -> None:
        """Fall back to the application default credentials when no provider is set."""
        if self.token_provider is None:
            self.token_provider = find_default_credentials()

    def _token(self) -> str:
        if self.token_provider is None:
            raise ValueError("no token provider configured")
        return self.token_provider.get_token("")

    def _get_json(self, url: str, token: str) -> Any:
        headers = {"authorization": "Bearer " + token} if token else {}
        res = self.session.get(url, headers=headers)
        _check(res)
        if self.debug:
            _log.info("%s", res.text)
        return json.loads(res.content)

    def _dest(self, cluster: Cluster) -> Dest:
        dest = Dest(addr="https://" + cluster.endpoint + ":443",
                    token_provider=self.token_provider)
        if cluster.ca_certificate:
            try:
                dest.add_trust_pem(cluster.ca_certificate)
            except ValueError as exc:
                _log.warning("Invalid CA for cluster %s: %s", cluster.name, exc)
        return dest

    def gke_clusters(self) -> list[Dest]:
        """Return a destination for every GKE cluster in the project."""
        token = self._token()
        doc = self._get_json(
            f"{_CONTAINER_API}/projects/{self.project_id}/locations/-/clusters", token
        )
        items = _get(doc, "clusters") or []
        return [self._dest(Cluster.from_dict(item)) for item in items]

    def hub_clusters(self) -> list[Dest]:
        """Return destinations for the GKE clusters registered in GKE Hub."""
        token = self._token()
        doc = self._get_json(
            f"{_HUB_API}/projects/{self.project_id}/locations/-/memberships", token
        )
        dests = []
        for item in _get(doc, "resources") or []:
            link = HubCluster.from_dict(item).resource_link
            if not link.startswith(_CONTAINER_LINK_PREFIX):
                continue
            try:
                dests.append(self.gke_cluster(token, link[len(_CONTAINER_LINK_PREFIX):]))
            except (requests.RequestException, ValueError) as exc:
                _log.warning("Failed to get %s %s", link, exc)
        return dests

    def gke_cluster(self, token: str, path: str) -> Dest:
        """Return the destination for one cluster; path is /projects/P/locations/L/clusters/C."""
        doc = self._get_json(_CONTAINER_API + path, token)
        return self._dest(Cluster.from_dict(doc))


def get_secret(token: str, project: str, name: str, version: str) -> bytes:
    """Return the payload of a Secret Manager secret version."""
    res = requests.get(
        f"{_SECRETS_API}/projects/{project}/secrets/{name}/versions/{version}:access",
        headers={"authorization": "Bearer " + token},
    )
    _check(res, "Error ")
    doc = json.loads(res.content)
    return _b64_bytes(_get(_get(doc, "payload"), "data"))