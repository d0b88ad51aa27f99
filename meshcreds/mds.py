"""Client for a GCP-style instance metadata server (MDS)."""

from __future__ import annotations

import json
import os
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from meshcreds.retry import Retryer, sleep

METADATA_IP = "169.254.169.254"
METADATA_HOST_ENV = "GCE_METADATA_HOST"
USER_AGENT = "meshcreds/0.1"

_PROJECT_ID_PATH = "project/project-id"
_PROJECT_NUMBER_PATH = "project/numeric-project-id"
_FAILED_SUBSCRIBE_SLEEP = 5.0
_REQUEST_TIMEOUT = 3.0


def _key(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


def _norm(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    return {_key(str(k)): v for k, v in data.items()}


def _str(data: dict[str, Any], name: str) -> str:
    value = data.get(_key(name))
    return value if isinstance(value, str) else ""


def _int(data: dict[str, Any], name: str) -> int:
    value = data.get(_key(name))
    try:
        return int(value) if value is not None else 0
    except (TypeError, ValueError):
        return 0


def _strings(data: dict[str, Any], name: str) -> list[str]:
    value = data.get(_key(name))
    return [str(v) for v in value] if isinstance(value, list) else []


def _entries(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items()}
    if isinstance(value, list):
        return {str(i): v for i, v in enumerate(value)}
    return {}


@dataclass
class InstanceAttributes:
    """Instance attributes; cluster fields are set on GKE only."""

    cluster_location: str = ""
    cluster_name: str = ""
    cluster_uid: str = ""
    ssh_keys: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> InstanceAttributes:
        d = _norm(data)
        return cls(
            cluster_location=_str(d, "cluster_location"),
            cluster_name=_str(d, "cluster_name"),
            cluster_uid=_str(d, "cluster_uid"),
            ssh_keys=_str(d, "ssh_keys"),
        )


@dataclass
class ServiceAccount:
    """A service account attached to the instance."""

    aliases: list[str] = field(default_factory=list)
    email: str = ""
    scopes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> ServiceAccount:
        d = _norm(data)
        return cls(
            aliases=_strings(d, "aliases"),
            email=_str(d, "email"),
            scopes=_strings(d, "scopes"),
        )


@dataclass
class NetworkInterface:
    """A network interface of the instance."""

    ip: str = ""
    ipv6s: str = ""
    gateway: str = ""
    mac: str = ""
    mtu: str = ""
    network: str = ""
    subnetmask: str = ""
    external_ip: str = ""
    access_type: str = ""
    target_instance_ips: list[str] = field(default_factory=list)
    dns_servers: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> NetworkInterface:
        d = _norm(data)
        access = _norm(d.get("accessconfigs"))
        return cls(
            ip=_str(d, "ip"),
            ipv6s=_str(d, "ipv6s"),
            gateway=_str(d, "gateway"),
            mac=_str(d, "mac"),
            mtu=str(d.get("mtu", "") or ""),
            network=_str(d, "network"),
            subnetmask=_str(d, "subnetmask"),
            external_ip=_str(access, "external_ip"),
            access_type=_str(access, "type"),
            target_instance_ips=_strings(d, "target_instance_ips"),
            dns_servers=_strings(d, "dns_servers"),
        )


@dataclass
class Instance:
    """Instance level metadata."""

    attributes: InstanceAttributes = field(default_factory=InstanceAttributes)
    hostname: str = ""
    id: int = 0
    name: str = ""
    zone: str = ""
    service_accounts: dict[str, ServiceAccount] = field(default_factory=dict)
    network_interfaces: dict[str, NetworkInterface] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Instance:
        d = _norm(data)
        return cls(
            attributes=InstanceAttributes.from_dict(d.get("attributes")),
            hostname=_str(d, "hostname"),
            id=_int(d, "id"),
            name=_str(d, "name"),
            zone=_str(d, "zone"),
            service_accounts={
                k: ServiceAccount.from_dict(v) for k, v in _entries(d.get("serviceaccounts")).items()
            },
            network_interfaces={
                k: NetworkInterface.from_dict(v)
                for k, v in _entries(d.get("networkinterfaces")).items()
            },
            tags=_strings(d, "tags"),
        )


@dataclass
class Project:
    """Project level metadata."""

    numeric_project_id: int = 0
    project_id: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    ssh_keys: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Project:
        d = _norm(data)
        attrs = d.get("attributes")
        return cls(
            numeric_project_id=_int(d, "numeric_project_id"),
            project_id=_str(d, "project_id"),
            attributes={str(k): str(v) for k, v in attrs.items()} if isinstance(attrs, dict) else {},
            ssh_keys=_str(d, "ssh_keys"),
        )


@dataclass
class Metadata:
    """Instance and project information as reported by the metadata server."""

    instance: Instance = field(default_factory=Instance)
    project: Project = field(default_factory=Project)

    @classmethod
    def from_dict(cls, data: Any) -> Metadata:
        """Build from a recursive metadata JSON document; key case and separators are ignored."""
        d = _norm(data)
        return cls(
            instance=Instance.from_dict(d.get("instance")),
            project=Project.from_dict(d.get("project")),
        )


class NotDefinedError(LookupError):
    """The requested metadata value does not exist."""

    def __init__(self, suffix: str) -> None:
        super().__init__(f"metadata: GCE metadata {json.dumps(suffix)} not defined")
        self.suffix = suffix


class MetadataError(Exception):
    """The metadata server answered with an unexpected status."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"code={code} msg=`{message}`")
        self.code = code
        self.message = message


@dataclass
class MDS:
    """Metadata server client; also a token source for platform-signed tokens."""

    addr: str = ""
    session: requests.Session = field(default_factory=requests.Session, repr=False)
    meta: Metadata | None = None

    def provision(self) -> None:
        """Resolve addr from the environment, defaulting to the documented MDS IP."""
        if not self.addr:
            self.addr = os.environ.get(METADATA_HOST_ENV, "")
        if not self.addr:
            self.addr = METADATA_IP
        if "/" not in self.addr:
            self.addr = "http://" + self.addr + "/computeMetadata/v1/"

    def get_token(self, audience: str) -> str:
        """Return an access token, or an identity token for a non-Google audience."""
        if audience == "" or "googleapis.com" in audience:
            return self.metadata_get("instance/service-accounts/default/token")
        return self.metadata_get(
            f"instance/service-accounts/default/identity?audience={audience}&format=full"
        )

    def project_id(self) -> str:
        """Project ID from loaded metadata, PROJECT_ID, or the metadata server."""
        if self.meta is not None:
            return self.meta.project.project_id
        pid = os.environ.get("PROJECT_ID", "")
        if pid:
            return pid
        try:
            return self.metadata_get(_PROJECT_ID_PATH)
        except (requests.RequestException, MetadataError):
            return ""

    def numeric_project_id(self) -> str:
        """Project number from loaded metadata, PROJECT_NUMBER, or the metadata server."""
        if self.meta is not None and self.meta.project.numeric_project_id > 0:
            return str(self.meta.project.numeric_project_id)
        pid = os.environ.get("PROJECT_NUMBER", "")
        if not pid:
            try:
                pid = self.metadata_get(_PROJECT_NUMBER_PATH)
            except (requests.RequestException, MetadataError):
                pid = ""
        return pid

    def metadata_get(self, path: str) -> str:
        """GET addr + path and return the stripped body; raise MetadataError on non-200."""
        res = self.session.get(
            self.addr + path,
            headers={"Metadata-Flavor": "Google"},
            timeout=_REQUEST_TIMEOUT,
        )
        if res.status_code != 200:
            raise MetadataError(res.status_code, res.reason or "")
        return res.text.strip()

    def _get_etag(self, suffix: str) -> tuple[str, str]:
        host = os.environ.get(METADATA_HOST_ENV) or METADATA_IP
        suffix = suffix.lstrip("/")
        url = f"http://{host}/computeMetadata/v1/{suffix}"
        headers = {"Metadata-Flavor": "Google", "User-Agent": USER_AGENT}
        retryer = Retryer()
        while True:
            res: requests.Response | None = None
            error: requests.RequestException | None = None
            try:
                res = self.session.get(url, headers=headers)
            except requests.RequestException as exc:
                error = exc
            status = res.status_code if res is not None else 0
            delay, again = retryer.retry(status, error)
            if not again:
                break
            sleep(delay)
        if error is not None:
            raise error
        assert res is not None
        if res.status_code == 404:
            raise NotDefinedError(suffix)
        if res.status_code != 200:
            raise MetadataError(res.status_code, res.text)
        return res.text, res.headers.get("Etag", "")

    def get(self, suffix: str) -> str:
        """Return a value relative to /computeMetadata/v1/ on the configured host."""
        value, _ = self._get_etag(suffix)
        return value

    def subscribe(self, suffix: str, fn: Callable[[str, bool], Any]) -> None:
        """Call fn with the value and then with each change, until it is deleted.

        fn is called with ("", False) once the value is deleted, after which
        subscribe returns. Exceptions raised by fn stop the subscription.
        """
        value, last_etag = self._get_etag(suffix)
        fn(value, True)

        separator = "&" if "?" in suffix else "?"
        suffix += separator + "wait_for_change=true&last_etag="
        while True:
            ok = True
            try:
                value, etag = self._get_etag(suffix + urllib.parse.quote_plus(last_etag))
            except NotDefinedError:
                value, etag, ok = "", "", False
            except (requests.RequestException, MetadataError):
                time.sleep(_FAILED_SUBSCRIBE_SLEEP)
                continue
            last_etag = etag
            fn(value, ok)
            if not ok:
                return