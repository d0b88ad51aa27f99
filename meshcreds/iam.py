"""Google service account token generation through the IAM credentials API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

import requests

from meshcreds.rest import TokenSource

GCP_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

_ACCESS_ENDPOINT = (
    "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/{}:generateAccessToken"
)
_ID_ENDPOINT = (
    "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/{}:generateIdToken"
)
_ACCESS_LIFETIME_SECONDS = 3600
_ACCESS_FIELD = "accessToken"
_ID_FIELD = "token"

_log = logging.getLogger(__name__)


@dataclass
class IAMServiceAccount:
    """A Google service account acting on behalf of a federated or user identity."""

    access_token_source: TokenSource | None = None
    gsa: str = ""
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def get_token(self, audience: str) -> str:
        """Return an OIDC token for the audience, or an access token for Google APIs."""
        if self.access_token_source is None:
            raise ValueError("no access token source configured")
        source_token = self.access_token_source.get_token("")
        return self.token_gsa(source_token, audience)

    def token_gsa(self, federated_token: str, audience: str) -> str:
        """Exchange federated_token for a token of this service account.

        An empty audience, or one on googleapis.com, yields an access token.
        """
        access = audience == "" or "googleapis.com" in audience
        if access:
            url = _ACCESS_ENDPOINT.format(self.gsa)
            query: dict[str, object] = {
                "name": "",
                "scope": [GCP_SCOPE],
                "lifetime": {"seconds": _ACCESS_LIFETIME_SECONDS},
            }
        else:
            url = _ID_ENDPOINT.format(self.gsa)
            query = {"audience": audience, "includeEmail": True}

        res = self.session.post(
            url,
            data=json.dumps(query),
            headers={
                "Content-Type": "application/json",
                "Authorization": "Bearer " + federated_token,
            },
        )
        body = res.content
        try:
            data = json.loads(body)
            if not isinstance(data, dict):
                raise ValueError("response is not a JSON object")
        except ValueError as exc:
            _log.warning("Unexpected unmarshal error, response was %s", res.text)
            raise ValueError(
                f"failed to unmarshal response data of size {len(body)}: {exc}"
            ) from exc

        field_name = _ACCESS_FIELD if access else _ID_FIELD
        issued = data.get(field_name)
        if not isinstance(issued, str) or not issued:
            if access:
                raise ValueError(
                    "Failed to get GSA access token from federated access token "
                    f"GSA={self.gsa}, response: {res.text}"
                )
            raise ValueError(f"exchanged empty token, response: {res.text}")
        return issued