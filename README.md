# meshcreds

Helpers for getting and serving workload credentials, built on `requests` and
`cryptography`:

- `meshcreds.mds` – client for a GCP-style instance metadata server: project
  information, access and identity tokens, values with retries, and change
  subscriptions.
- `meshcreds.mdsd` – a small HTTP server that emulates the metadata server,
  answering from a `Metadata` object and the token sources you give it.
- `meshcreds.iam` – `IAMServiceAccount` exchanges a federated or user access
  token for a service account's access token or OIDC token.
- `meshcreds.gcp` – `OAuth2Source` (credentials files and refresh tokens),
  `find_default_credentials()`, `GCPAuth` for listing GKE and GKE Hub clusters as
  REST destinations, and `get_secret()` for Secret Manager.
- `meshcreds.rest` – `Dest` and `RESTRequest` for Kubernetes-style REST calls
  with raw JSON bodies and bearer tokens.
- `meshcreds.webpush` – `aes128gcm` Web Push message encryption and decryption,
  and helpers to build and send push requests.
- `meshcreds.retry` – randomised exponential backoff and the retry decision for
  5xx responses and transient network errors.

## Installation

```
pip install meshcreds
```

Python 3.10 or later is required.

## Token sources

Anything with a `get_token(audience) -> str` method is a token source
(`meshcreds.rest.TokenSource`). An empty audience asks for an access token.
`MDS`, `IAMServiceAccount` and `OAuth2Source` are token sources, and can be
plugged into each other, into `Dest` and into `MDSD`.

## Metadata server client

```python
from meshcreds.mds import MDS, NotDefinedError

mds = MDS()
mds.provision()   # addr from GCE_METADATA_HOST, else 169.254.169.254

print(mds.project_id())          # PROJECT_ID, else the server
print(mds.numeric_project_id())  # PROJECT_NUMBER, else the server

access = mds.get_token("")                       # access token
identity = mds.get_token("https://example.com")  # identity token, format=full

try:
    zone = mds.get("instance/zone")
except NotDefinedError:
    zone = None
```

`MDS.get()` and `MDS.subscribe()` always address the host named by
`GCE_METADATA_HOST` (or 169.254.169.254) and retry 5xx answers and transient
network errors up to five times with backoff. `MDS.subscribe(suffix, fn)` calls
`fn(value, True)` with the current value and again after each change; when the
value is deleted it calls `fn("", False)` and returns. An exception raised by
`fn` ends the subscription.

`MDS.metadata_get(path)` fetches `addr + path` once, with a three-second timeout,
and raises `MetadataError` for any status other than 200.

## Metadata server emulator

```python
from meshcreds.mdsd import new_server

server = new_server()
server.metadata.project.project_id = "example-project"
server.start()   # serves on 127.0.0.1:15021, sets GCE_METADATA_HOST
response = server.handle(
    "/computeMetadata/v1/project/project-id",
    {"Metadata-Flavor": "Google"},
)
print(response.status, response.body)
server.stop()
```

Under `/computeMetadata/v1/` requests without a `Metadata-Flavor` header get 403.
The emulator answers the project ID, project number, zone, and
`instance/service-accounts/<name>/email`, `.../token` (from
`gcp_token_provider`) and `.../identity?audience=...` (from `token_provider`).
Other paths under the prefix get 404; any other path gets 200 with a
`Metadata-Flavor: Google` header, as clients probing for a metadata server expect.

## GCP

```python
from meshcreds.gcp import GCPAuth

auth = GCPAuth(project_id="example-project")
auth.provision()                 # application default credentials if no provider
for dest in auth.gke_clusters():
    print(dest.addr)
```

Each returned `Dest` trusts the cluster's CA certificate and uses the same token
provider. `hub_clusters()` does the same for GKE clusters registered in GKE Hub,
logging and skipping those that cannot be fetched.

## REST requests

```python
from meshcreds.rest import Dest, RESTRequest

dest = Dest(addr="https://k8s.example.com")
body = RESTRequest(namespace="default", kind="configmap", name="settings").do(dest)
```

Without an explicit `path` the URL is `/api/v1/namespaces/<ns>/<kind>s/<name>`,
or `/apis/<kind>/<name>` when no namespace is given. A request with a `spec`
body defaults to POST, otherwise GET. `do()` raises `RestError` for a non-2xx
status; `load()` returns the decoded JSON of a resource.

## Web Push

```python
from meshcreds.webpush import Subscription

with open("subscription.json", "rb") as f:
    subscription = Subscription.from_json(f.read())

body = subscription.encrypt(b"hello")
```

Use `WebpushEncryption.for_sender(ua_public, auth)` to encrypt and
`WebpushEncryption.for_receiver(ua_private, ua_public, auth)` to decrypt.
Payloads are limited to 4078 bytes. `new_request()` builds a prepared push
request; `send_message()` encrypts and posts a message, or with `show` set prints
an equivalent shell command instead.

## Errors

Failures are raised as exceptions: `RestError` for non-2xx REST responses,
`NotDefinedError` when a metadata key does not exist, `MetadataError` for other
metadata server error responses, `ValueError` for bad responses, keys and
payloads, and `requests.HTTPError` for failed GCP API calls.

## What it does not do

There is no command-line program; everything is used from Python. The emulator
only hands out tokens from the sources it is given and does not mint or sign
tokens itself, and nothing is stored between runs.

## Running the tests

```
pip install meshcreds[test]
pytest
```