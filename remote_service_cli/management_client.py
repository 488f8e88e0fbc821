"""
Management API Client

HTTP access to the API-management control plane (proxies, caches, key-value
maps, API products, developers and apps) and to the runtime endpoints of
the deployed remote-service proxy.
"""

import httpx
import logging
from typing import Dict, List, Optional, Tuple

from remote_service_cli.schemas import (
    ApiProduct,
    AppCredential,
    AppCredentialDetails,
    Cache,
    Developer,
    DeveloperApp,
    KeyValueMap,
)

logger = logging.getLogger(__name__)


class ManagementAPIError(Exception):
    """Exception raised when a remote call fails or returns an error status"""

    def __init__(self, message: str, status_code: Optional[int] = None, method: str = "", url: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.method = method
        self.url = url

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


def parse_revisions(values) -> List[int]:
    """
    Convert revision identifiers reported by the management API to integers.

    Raises:
        ManagementAPIError: If a revision is not a number
    """
    revisions = []
    for value in values:
        try:
            revisions.append(int(value))
        except (TypeError, ValueError) as e:
            raise ManagementAPIError(f"invalid proxy revision {value!r} in management API response") from e
    return revisions


class HTTPClient:
    """
    Thin wrapper around httpx for absolute-URL calls.

    Any status of 400 or above, and any transport failure (including TLS
    verification), raises ManagementAPIError.
    """

    def __init__(
        self,
        verify_ssl: bool = True,
        timeout: Optional[float] = None,
        auth: Optional[Tuple[str, str]] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        from remote_service_cli.config import settings

        self.verify_ssl = verify_ssl
        self.timeout = timeout if timeout is not None else settings.http_timeout
        self.auth = auth
        self.token = token
        self.transport = transport

    def _headers(self) -> dict:
        """Get authorization headers."""
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _client(self) -> httpx.Client:
        return httpx.Client(
            verify=self.verify_ssl,
            timeout=self.timeout,
            transport=self.transport,
        )

    def request(
        self,
        method: str,
        url: str,
        auth: Optional[Tuple[str, str]] = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Issue a single request.

        Args:
            method: HTTP method
            url: Absolute URL
            auth: Basic auth pair overriding the client's own credentials
            **kwargs: Passed through to httpx (json, params, files, ...)

        Returns:
            The response, for any status below 400

        Raises:
            ManagementAPIError: On transport failure or error status
        """
        auth = auth or self.auth
        headers = kwargs.pop("headers", {})
        if not auth:
            headers = {**self._headers(), **headers}

        logger.debug(f"{method} {url}")
        try:
            with self._client() as client:
                response = client.request(method, url, auth=auth, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ManagementAPIError(f"{method} {url} failed: {e}", method=method, url=url) from e

        if response.status_code >= 400:
            error_msg = f"{method} {url}: HTTP {response.status_code}"
            if response.text:
                error_msg += f" - {response.text[:200]}"
            logger.debug(error_msg)
            raise ManagementAPIError(error_msg, status_code=response.status_code, method=method, url=url)

        return response

    @staticmethod
    def json_body(response: httpx.Response) -> dict:
        """Decode a JSON body, treating an empty body as an empty object."""
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ManagementAPIError(
                f"{response.request.method} {response.request.url}: invalid JSON response",
                status_code=response.status_code,
            ) from e


class ManagementClient(HTTPClient):
    """
    Client for the management API of a single organization/environment.

    Paths follow /v1/organizations/{org}[/environments/{env}]/...; legacy and
    OPDK use basic auth, hybrid uses a bearer token.
    """

    def __init__(
        self,
        base_url: str,
        org: str,
        env: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        token: Optional[str] = None,
        verify_ssl: bool = True,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        auth = (username, password) if username and password and not token else None
        super().__init__(verify_ssl=verify_ssl, timeout=timeout, auth=auth, token=token, transport=transport)
        self.base_url = base_url.rstrip("/")
        self.org = org
        self.env = env

    def org_url(self, path: str) -> str:
        return f"{self.base_url}/v1/organizations/{self.org}/{path}"

    def env_url(self, path: str) -> str:
        return self.org_url(f"environments/{self.env}/{path}")

    def _create(self, url: str, payload: dict, tolerate_conflict: bool) -> Optional[dict]:
        """POST a new resource; with tolerate_conflict a 409 returns None."""
        try:
            response = self.request("POST", url, json=payload)
        except ManagementAPIError as e:
            if tolerate_conflict and e.is_conflict:
                logger.info(f"{url} already exists")
                return None
            raise
        return self.json_body(response)

    # Proxies

    def get_deployed_revision(self, name: str, gcp_managed: bool = False) -> Optional[int]:
        """
        Get the revision of a proxy currently deployed to the environment.

        Legacy/OPDK respond with {"revision": [{"name": "3"}]}; hybrid with
        {"deployments": [{"revision": "3"}]}.

        Returns:
            Highest deployed revision, or None if not deployed
        """
        try:
            response = self.request("GET", self.env_url(f"apis/{name}/deployments"))
        except ManagementAPIError as e:
            if e.is_not_found:
                return None
            raise

        data = self.json_body(response)
        if gcp_managed:
            revisions = [d.get("revision") for d in data.get("deployments", [])]
        else:
            revisions = [r.get("name") for r in data.get("revision", [])]

        revisions = parse_revisions(r for r in revisions if r is not None)
        return max(revisions) if revisions else None

    def get_proxy(self, name: str) -> Optional[dict]:
        """Get proxy details ({"name": ..., "revision": [...]}), or None if absent."""
        try:
            response = self.request("GET", self.org_url(f"apis/{name}"))
        except ManagementAPIError as e:
            if e.is_not_found:
                return None
            raise
        return self.json_body(response)

    def import_proxy(self, name: str, bundle: bytes) -> dict:
        """Upload a proxy bundle zip as a new revision."""
        response = self.request(
            "POST",
            self.org_url("apis"),
            params={"action": "import", "name": name},
            files={"file": (f"{name}.zip", bundle, "application/octet-stream")},
        )
        return self.json_body(response)

    def deploy_proxy(self, name: str, revision: int, override: bool = False) -> dict:
        params = {"override": "true"} if override else None
        response = self.request(
            "POST",
            self.env_url(f"apis/{name}/revisions/{revision}/deployments"),
            params=params,
        )
        return self.json_body(response)

    def undeploy_proxy(self, name: str, revision: int) -> dict:
        response = self.request("DELETE", self.env_url(f"apis/{name}/revisions/{revision}/deployments"))
        return self.json_body(response)

    # Environment resources

    def create_cache(self, cache: Cache, tolerate_conflict: bool = True) -> Optional[dict]:
        return self._create(self.env_url("caches"), cache.model_dump(), tolerate_conflict)

    def create_kvm(self, kvm: KeyValueMap, tolerate_conflict: bool = True) -> Optional[dict]:
        return self._create(self.env_url("keyvaluemaps"), kvm.model_dump(by_alias=True), tolerate_conflict)

    # Organization resources

    def create_api_product(self, product: ApiProduct, tolerate_conflict: bool = True) -> Optional[dict]:
        return self._create(self.org_url("apiproducts"), product.model_dump(by_alias=True), tolerate_conflict)

    def create_developer(self, developer: Developer, tolerate_conflict: bool = True) -> Optional[dict]:
        return self._create(self.org_url("developers"), developer.model_dump(by_alias=True), tolerate_conflict)

    def create_developer_app(
        self,
        developer_email: str,
        app: DeveloperApp,
        tolerate_conflict: bool = True,
    ) -> Optional[DeveloperApp]:
        """
        Create a developer app.

        Returns:
            The created app with its generated credentials, or None if an app
            of that name already exists and tolerate_conflict is set
        """
        payload = app.model_dump(by_alias=True, exclude={"credentials"})
        data = self._create(self.org_url(f"developers/{developer_email}/apps"), payload, tolerate_conflict)
        if data is None:
            return None
        return DeveloperApp.model_validate({"name": app.name, **data})

    def create_app_key(self, developer_email: str, app_name: str, credential: AppCredential) -> AppCredential:
        """Add a caller-chosen key/secret pair to an existing app."""
        response = self.request(
            "POST",
            self.org_url(f"developers/{developer_email}/apps/{app_name}/keys/create"),
            json=credential.model_dump(by_alias=True),
        )
        data = self.json_body(response)
        if data.get("consumerKey") and data.get("consumerSecret"):
            return AppCredential.model_validate(data)
        return credential

    def add_products_to_key(self, developer_email: str, app_name: str, key: str, products: List[str]) -> Dict:
        details = AppCredentialDetails(api_products=products)
        response = self.request(
            "POST",
            self.org_url(f"developers/{developer_email}/apps/{app_name}/keys/{key}"),
            json=details.model_dump(by_alias=True),
        )
        return self.json_body(response)
