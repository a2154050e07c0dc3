"""Control plane client for HCP Vault clusters.

The reconciler depends only on the ControlPlaneClient protocol. HCPClient
implements it over HTTPS with an azure-core pipeline:

- RetryPolicy retries idempotent reads on transient responses
- Create requests are sent with retries disabled (one submission per call)
- BearerTokenCredentialPolicy attaches OAuth2 client-credential tokens

Status mapping: 404 -> NotFoundError, 409 -> ConflictError,
408/429/5xx and transport failures -> TransientError, any other
4xx -> ClientRequestError.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Protocol

from azure.core import PipelineClient
from azure.core.credentials import AccessToken
from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    NetworkTraceLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest, HttpResponse

from .config import DEFAULT_API_SCOPE, Config
from .errors import (
    ClientRequestError,
    ConflictError,
    NotFoundError,
    Outcome,
    TransientError,
)
from .models import (
    ClusterCreateRequest,
    ClusterSnapshot,
    Location,
    NetworkSnapshot,
    Operation,
)

logger = logging.getLogger(__name__)

USER_AGENT = "hcp-vault-cluster-reconciler/0.1.0"

VAULT_API_VERSION = "2020-11-25"
NETWORK_API_VERSION = "2020-09-07"
OPERATION_API_VERSION = "2020-05-05"

# Client-side retries for idempotent requests
MAX_REQUEST_RETRIES = 3
RETRY_BACKOFF_FACTOR = 0.8

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Refresh tokens this long before they expire
TOKEN_REFRESH_MARGIN_SECONDS = 60


class ControlPlaneClient(Protocol):
    """Remote operations the reconciler consumes.

    Implementations are synchronous; the reconciler runs them in an
    executor. get_cluster raises NotFoundError when the cluster is absent.
    """

    def get_network(self, location: Location, network_id: str) -> NetworkSnapshot: ...

    def create_cluster(
        self, location: Location, request: ClusterCreateRequest
    ) -> tuple[ClusterSnapshot, Operation]: ...

    def get_cluster(self, location: Location, cluster_id: str) -> ClusterSnapshot: ...

    def delete_cluster(self, location: Location, cluster_id: str) -> Operation: ...

    def get_operation(self, location: Location, operation_id: str) -> Operation: ...


def _error_message(response: HttpResponse) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text()[:500]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


def raise_for_status(response: HttpResponse, what: str, *, mutating: bool = False) -> None:
    """Translate a non-2xx response into the lifecycle error taxonomy.

    Args:
        response: Control plane response.
        what: Human-readable description of the request for messages.
        mutating: Whether the request changes remote state. Transient
            failures of mutating requests may have taken effect.
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    message = f"{what}: {_error_message(response)} (HTTP {status})"
    if status == 404:
        raise NotFoundError(message)
    if status == 409:
        raise ConflictError(message)
    if status in TRANSIENT_STATUS_CODES:
        outcome = Outcome.MAYBE_DONE if mutating else Outcome.NOT_DONE
        raise TransientError(message, outcome=outcome)
    raise ClientRequestError(message, status_code=status)


class ClientCredentials:
    """OAuth2 client-credentials token provider.

    Implements the azure-core TokenCredential protocol so it can be used
    with BearerTokenCredentialPolicy. Tokens are cached until shortly
    before they expire.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        auth_url: str,
        audience: str = DEFAULT_API_SCOPE,
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret are required")
        self._client_id = client_id
        self._client_secret = client_secret
        self._auth_url = auth_url
        self._audience = audience
        self._token: AccessToken | None = None
        self._lock = threading.Lock()
        self._pipeline = PipelineClient(
            base_url=auth_url,
            policies=[
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(retry_total=MAX_REQUEST_RETRIES),
                NetworkTraceLoggingPolicy(),
            ],
        )

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        """Return a cached token or fetch a new one."""
        with self._lock:
            now = int(time.time())
            if self._token and self._token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS > now:
                return self._token

            request = HttpRequest(
                "POST",
                self._auth_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "audience": self._audience,
                },
            )
            try:
                response = self._pipeline.send_request(request)
            except (ServiceRequestError, ServiceResponseError) as e:
                raise TransientError(f"token request failed: {e}") from e
            raise_for_status(response, "token request")

            body = response.json()
            self._token = AccessToken(body["access_token"], now + int(body.get("expires_in", 3600)))
            logger.debug("Fetched control plane token", extra={"expires_on": self._token.expires_on})
            return self._token

    def close(self) -> None:
        self._pipeline.close()


class HCPClient:
    """HTTPS implementation of ControlPlaneClient."""

    def __init__(self, config: Config, credential: Any | None = None) -> None:
        """Initialize the client.

        Args:
            config: Validated configuration.
            credential: TokenCredential to authenticate with. Defaults to
                ClientCredentials built from the configuration.

        Raises:
            ValueError: If no credential is given and the configuration
                carries no client credentials.
        """
        if credential is None:
            if not config.has_credentials:
                raise ValueError("HCP_CLIENT_ID and HCP_CLIENT_SECRET are required")
            credential = ClientCredentials(
                config.client_id or "",
                config.client_secret or "",
                config.auth_url,
            )

        self._config = config
        self._credential = credential
        self._pipeline = PipelineClient(
            base_url=config.api_endpoint,
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(retry_total=MAX_REQUEST_RETRIES, retry_backoff_factor=RETRY_BACKOFF_FACTOR),
                BearerTokenCredentialPolicy(credential, DEFAULT_API_SCOPE),
                NetworkTraceLoggingPolicy(),
            ],
        )

    def _send(
        self,
        method: str,
        path: str,
        what: str,
        *,
        json: dict[str, Any] | None = None,
        mutating: bool = False,
        retry: bool = True,
    ) -> dict[str, Any]:
        request = HttpRequest(method, self._pipeline.format_url(path), json=json)
        options: dict[str, Any] = {
            "connection_timeout": self._config.request_timeout_seconds,
            "read_timeout": self._config.request_timeout_seconds,
        }
        if not retry:
            options["retry_total"] = 0

        try:
            response = self._pipeline.send_request(request, **options)
        except ServiceRequestError as e:
            # Request never reached the control plane
            raise TransientError(f"{what}: {e}") from e
        except ServiceResponseError as e:
            outcome = Outcome.MAYBE_DONE if mutating else Outcome.NOT_DONE
            raise TransientError(f"{what}: {e}", outcome=outcome) from e

        raise_for_status(response, what, mutating=mutating)
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _project_path(service: str, version: str, location: Location) -> str:
        return (
            f"/{service}/{version}/organizations/{location.organization_id}"
            f"/projects/{location.project_id}"
        )

    def get_network(self, location: Location, network_id: str) -> NetworkSnapshot:
        path = self._project_path("network", NETWORK_API_VERSION, location)
        body = self._send("GET", f"{path}/networks/{network_id}", f"get network {network_id}")
        return NetworkSnapshot.from_api(body["network"])

    def create_cluster(
        self, location: Location, request: ClusterCreateRequest
    ) -> tuple[ClusterSnapshot, Operation]:
        path = self._project_path("vault", VAULT_API_VERSION, location)
        body = self._send(
            "POST",
            f"{path}/clusters",
            f"create cluster {request.cluster_id}",
            json=request.to_api_body(location),
            mutating=True,
            retry=False,
        )
        # The create response may carry only the operation
        cluster = body.get("cluster") or {
            "id": request.cluster_id,
            "state": "CREATING",
            "location": {
                "organization_id": location.organization_id,
                "project_id": location.project_id,
            },
            "config": {"network_config": {"network_id": request.network_id}},
        }
        return ClusterSnapshot.from_api(cluster), Operation.from_api(body["operation"])

    def get_cluster(self, location: Location, cluster_id: str) -> ClusterSnapshot:
        path = self._project_path("vault", VAULT_API_VERSION, location)
        body = self._send("GET", f"{path}/clusters/{cluster_id}", f"get cluster {cluster_id}")
        return ClusterSnapshot.from_api(body["cluster"])

    def delete_cluster(self, location: Location, cluster_id: str) -> Operation:
        path = self._project_path("vault", VAULT_API_VERSION, location)
        body = self._send(
            "DELETE",
            f"{path}/clusters/{cluster_id}",
            f"delete cluster {cluster_id}",
            mutating=True,
        )
        return Operation.from_api(body["operation"])

    def get_operation(self, location: Location, operation_id: str) -> Operation:
        path = self._project_path("operation", OPERATION_API_VERSION, location)
        body = self._send("GET", f"{path}/operations/{operation_id}", f"get operation {operation_id}")
        return Operation.from_api(body["operation"])

    def close(self) -> None:
        self._pipeline.close()
        if isinstance(self._credential, ClientCredentials):
            self._credential.close()

    def __enter__(self) -> HCPClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
