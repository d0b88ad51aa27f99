import datetime

import pytest
import requests
import responses
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from meshcreds.rest import Dest, RESTRequest, RestError, load

ADDR = "https://k8s.example.com"


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


class _Tokens:
    def __init__(self, fail=False):
        self.fail = fail
        self.audiences = []

    def get_token(self, audience):
        self.audiences.append(audience)
        if self.fail:
            raise RuntimeError("no token")
        return "token"


def _self_signed_pem():
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "example.com")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


def test_namespaced_resource_path():
    req = RESTRequest(namespace="default", kind="configmap", name="cfg")
    prepared = req.http_request(Dest(addr=ADDR))
    assert prepared.url == ADDR + "/api/v1/namespaces/default/configmaps/cfg"
    assert prepared.method == "GET"
    assert "content-type" not in prepared.headers


def test_cluster_list_path_without_name():
    prepared = RESTRequest(kind="nodes").http_request(Dest(addr=ADDR))
    assert prepared.url == ADDR + "/apis/nodes"


def test_explicit_path_and_query():
    req = RESTRequest(path="/custom/thing", query="?watch=0", namespace="ignored")
    prepared = req.http_request(Dest(addr=ADDR))
    assert prepared.url == ADDR + "/custom/thing?watch=0"


def test_spec_defaults_to_post_with_json_content_type():
    req = RESTRequest(path="/x", spec=b'{"a": 1}')
    prepared = req.http_request(Dest(addr=ADDR))
    assert prepared.method == "POST"
    assert prepared.headers["content-type"] == "application/json"
    assert prepared.body == b'{"a": 1}'


def test_explicit_method_and_post():
    assert RESTRequest(path="/x", spec=b"{}", method="PUT").http_request(Dest(addr=ADDR)).method == "PUT"
    req = RESTRequest(path="/x").post()
    assert req.method == "POST"
    assert req.http_request(Dest(addr=ADDR)).method == "POST"


def test_token_provider_adds_bearer_for_address():
    tokens = _Tokens()
    prepared = RESTRequest(path="/x").http_request(Dest(addr=ADDR, token_provider=tokens))
    assert prepared.headers["authorization"] == "Bearer token"
    assert tokens.audiences == [ADDR]


def test_failing_token_provider_leaves_request_unauthenticated():
    prepared = RESTRequest(path="/x").http_request(Dest(addr=ADDR, token_provider=_Tokens(fail=True)))
    assert "authorization" not in prepared.headers


def test_rest_client_binds_destination():
    dest = Dest(addr=ADDR)
    req = dest.rest_client("apps", "v1")
    assert req.dest is dest


def test_do_returns_body(mocked):
    mocked.add(responses.GET, ADDR + "/apis/widgets", body=b"[1,2]", status=200)
    dest = Dest(addr=ADDR)
    assert RESTRequest(kind="widgets").do(dest) == b"[1,2]"


def test_do_uses_bound_destination(mocked):
    mocked.add(responses.GET, ADDR + "/apis/widgets", body=b"ok", status=204)
    dest = Dest(addr=ADDR)
    assert dest.rest_client("", "v1").do() == b""


def test_do_raises_on_error_status(mocked):
    mocked.add(responses.GET, ADDR + "/apis/widgets", body="forbidden", status=403)
    with pytest.raises(RestError) as info:
        RESTRequest(kind="widgets").do(Dest(addr=ADDR))
    assert info.value.status == 403
    assert "forbidden" in str(info.value)


def test_do_without_destination_raises():
    with pytest.raises(ValueError):
        RESTRequest(kind="widgets").do()


def test_load_decodes_json(mocked):
    mocked.add(
        responses.GET,
        ADDR + "/api/v1/namespaces/ns/secrets/creds",
        json={"data": {"k": "v"}},
    )
    assert load(Dest(addr=ADDR), "secret", "ns", "creds") == {"data": {"k": "v"}}


def test_load_rejects_non_json(mocked):
    mocked.add(responses.GET, ADDR + "/apis/secret/creds", body="not json")
    with pytest.raises(ValueError):
        load(Dest(addr=ADDR), "secret", "", "creds")


def test_add_trust_pem_rejects_garbage():
    dest = Dest(addr=ADDR)
    with pytest.raises(ValueError):
        dest.add_trust_pem(b"not a certificate")
    assert dest.trust_pems == []


def test_trusted_pem_written_to_session_bundle():
    pem = _self_signed_pem()
    dest = Dest(addr=ADDR)
    dest.add_trust_pem(pem.decode("ascii"))
    session = dest.session()
    assert isinstance(session, requests.Session)
    with open(session.verify, "rb") as fh:
        assert pem.strip() in fh.read()
    assert dest.session() is session