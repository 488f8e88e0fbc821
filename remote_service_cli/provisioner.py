"""
Remote Service Provisioner

Makes an organization/environment ready to serve the remote-service proxy
for one of three topologies (legacy SaaS, hybrid, OPDK): deploys the proxy
if absent, creates the supporting resources and a credential, verifies the
deployed proxy, and renders the configuration for the envoy adapter.

Every remote call is issued and completed before the next one starts.
"Already exists" conflicts on resource creation count as success; any other
failure before verification stops the run without rolling back what was
already created.
"""

import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import httpx

from remote_service_cli.config import settings
from remote_service_cli.management_client import HTTPClient, ManagementAPIError, ManagementClient, parse_revisions
from remote_service_cli.manifests import (
    join_documents,
    render_config_map,
    render_credential_secret,
    render_policy_secret,
)
from remote_service_cli.proxy_bundle import (
    AUTH_PROXY_NAME,
    INTERNAL_PROXY_NAME,
    internal_proxy_bundle,
    read_bundle,
    remote_service_bundle,
)
from remote_service_cli.schemas import (
    ApiProduct,
    AppCredential,
    Attribute,
    Cache,
    Credential,
    Developer,
    DeveloperApp,
    KeyValueMap,
    KVMEntry,
    RootArgs,
    ServerConfig,
    TenantConfig,
)
from remote_service_cli.signing_keys import SigningKey

logger = logging.getLogger(__name__)

CACHE_NAME = "remote-service"
KVM_NAME = "remote-service"
API_PRODUCT_NAME = "remote-service"
APP_NAME = "remote-service"

CREDENTIAL_PATH = "{internal}/credential/organization/{org}/environment/{env}"


class ProvisioningError(Exception):
    """Exception raised when a provisioning step fails"""
    pass


@dataclass
class ProvisioningResult:
    """Outcome of a provisioning run."""
    config: ServerConfig
    manifests: str
    credential: Optional[Credential] = None
    verification_errors: List[str] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return not self.verification_errors


def _new_hash() -> str:
    return secrets.token_hex(32)


class RemoteServiceProvisioner:
    """
    Drives the ordered provisioning calls for one RootArgs context.

    Progress is reported through `printer` when verbose (or verifying only)
    and always through logging.
    """

    def __init__(
        self,
        args: RootArgs,
        developer_email: Optional[str] = None,
        force_proxy_install: bool = False,
        virtual_hosts: Optional[List[str]] = None,
        verify_only: bool = False,
        key: Optional[str] = None,
        secret: Optional[str] = None,
        bundle_path: Optional[str] = None,
        printer: Callable[[str], None] = print,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.args = args
        self.developer_email = developer_email
        self.force_proxy_install = force_proxy_install
        self.virtual_hosts = virtual_hosts if virtual_hosts is not None else settings.default_virtual_hosts_list
        self.verify_only = verify_only
        self.key = key
        self.secret = secret
        self.bundle_path = bundle_path
        self.printer = printer
        self.transport = transport

        self.client = ManagementClient(
            base_url=args.management_base or "",
            org=args.org or "",
            env=args.env,
            username=args.username,
            password=args.password,
            token=args.token,
            verify_ssl=not args.insecure_skip_verify,
            transport=transport,
        )
        self.signing_key: Optional[SigningKey] = None

    def _verbose(self, message: str):
        logger.info(message)
        if self.args.verbose or self.verify_only:
            self.printer(message)

    def _validate(self):
        if not self.args.org or not self.args.env:
            raise ProvisioningError("--org and --env are required")
        if not self.args.remote_service_proxy_url:
            raise ProvisioningError("--runtime is required")
        if self.verify_only:
            if not self.key or not self.secret:
                raise ProvisioningError("--key and --secret are required for --verify-only")
            return
        if self.args.is_gcp_managed and not self.developer_email:
            raise ProvisioningError("--developer-email is required for hybrid")
        if self.args.is_opdk and not self.args.internal_proxy_url:
            raise ProvisioningError("--runtime is required for --opdk")

    def run(self) -> ProvisioningResult:
        """
        Run the provisioning workflow for the selected mode.

        Returns:
            ProvisioningResult with the rendered manifests

        Raises:
            ProvisioningError: If a step before verification fails
        """
        self._validate()
        logger.info(f"Provisioning {self.args.org}/{self.args.env} ({self.args.mode})")

        if self.verify_only:
            credential = Credential(key=self.key, secret=self.secret)
        else:
            if self.args.is_opdk:
                self.check_and_deploy_proxy(INTERNAL_PROXY_NAME, internal_proxy_bundle(self.virtual_hosts))

            if self.bundle_path:
                bundle = read_bundle(self.bundle_path)
            elif self.args.is_gcp_managed:
                bundle = remote_service_bundle()
            else:
                bundle = remote_service_bundle(self.virtual_hosts)
            self.check_and_deploy_proxy(AUTH_PROXY_NAME, bundle)

            if self.args.is_gcp_managed:
                credential = self.create_gcp_credential()
            else:
                credential = self.create_legacy_credential()

            self.signing_key = SigningKey()
            self.create_kvm()

        self._verbose("verifying remote-service proxy...")
        verification_errors = self.verify_remote_service_proxy(credential)
        if verification_errors:
            for error in verification_errors:
                logger.warning(f"Verification failed: {error}")
        else:
            self._verbose("provisioning verified OK")

        config = self.create_config(credential)
        return ProvisioningResult(
            config=config,
            manifests=self.render_manifests(config, credential),
            credential=credential,
            verification_errors=verification_errors,
        )

    # Proxy deployment

    def check_and_deploy_proxy(self, name: str, bundle: bytes):
        """Deploy `name` unless a revision is already deployed (or forced)."""
        self._verbose(f"checking if proxy {name} deployment exists...")
        try:
            old_rev = self.client.get_deployed_revision(name, gcp_managed=self.args.is_gcp_managed)
        except ManagementAPIError as e:
            raise ProvisioningError(f"checking deployment of proxy {name}: {e}") from e

        if old_rev is not None:
            if not self.force_proxy_install:
                self._verbose(f"proxy {name} revision {old_rev} already deployed to {self.args.env}")
                return
            self._verbose(f"replacing proxy {name} revision {old_rev} in {self.args.env}")

        self._verbose(f"checking proxy {name} status...")
        try:
            proxy = self.client.get_proxy(name)
        except ManagementAPIError as e:
            raise ProvisioningError(f"getting proxy {name}: {e}") from e

        self.import_and_deploy_proxy(name, bundle, proxy, old_rev)

    def import_and_deploy_proxy(self, name: str, bundle: bytes, proxy: Optional[dict], old_rev: Optional[int]):
        try:
            revisions = parse_revisions((proxy or {}).get("revision", []))
        except ManagementAPIError as e:
            raise ProvisioningError(f"reading revisions of proxy {name}: {e}") from e
        new_rev = max(revisions) + 1 if revisions else 1
        if revisions:
            self._verbose(f"proxy {name} exists. highest revision is: {new_rev - 1}")

        try:
            self._verbose(f"creating new proxy {name} revision: {new_rev}...")
            self.client.import_proxy(name, bundle)

            # hybrid replaces the deployed revision in place
            if old_rev is not None and not self.args.is_gcp_managed:
                self._verbose(f"undeploying proxy {name} revision {old_rev} on env {self.args.env}...")
                self.client.undeploy_proxy(name, old_rev)

            if name == AUTH_PROXY_NAME:
                self._verbose(f"creating cache {CACHE_NAME} on env {self.args.env}...")
                if self.client.create_cache(Cache(name=CACHE_NAME, description="remote-service cache")) is None:
                    self._verbose(f"cache {CACHE_NAME} already exists")

            self._verbose(f"deploying proxy {name} revision {new_rev} to env {self.args.env}...")
            self.client.deploy_proxy(name, new_rev, override=old_rev is not None)
        except ManagementAPIError as e:
            raise ProvisioningError(f"deploying proxy {name}: {e}") from e

        self._verbose(f"proxy {name} revision {new_rev} deployed to {self.args.env}")

    # Credentials

    def create_legacy_credential(self) -> Credential:
        """Create a credential through the internal proxy (legacy and OPDK)."""
        self._verbose("creating credential...")
        url = CREDENTIAL_PATH.format(
            internal=self.args.internal_proxy_url,
            org=self.args.org,
            env=self.args.env,
        )
        try:
            response = self.client.request("POST", url)
        except ManagementAPIError as e:
            if e.is_conflict:
                raise ProvisioningError(
                    "error creating credential: a credential already exists for this environment, "
                    "use --force-proxy-install to replace it"
                ) from e
            raise ProvisioningError(f"creating credential: {e}") from e

        try:
            credential = Credential.model_validate(self.client.json_body(response))
        except (ValueError, ManagementAPIError) as e:
            raise ProvisioningError(f"creating credential: unexpected response: {e}") from e
        if not credential.key or not credential.secret:
            logger.warning("Credential response is missing key or secret")
        self._verbose("credential created")
        return credential

    def create_gcp_credential(self) -> Credential:
        """
        Create the API product, developer and app that own the credential.

        Re-running is safe: existing product and developer are reused, and an
        existing app gets a fresh key bound to the product.
        """
        email = self.developer_email
        try:
            self._verbose(f"creating API product {API_PRODUCT_NAME}...")
            product = ApiProduct(
                name=API_PRODUCT_NAME,
                display_name=API_PRODUCT_NAME,
                approval_type="auto",
                description=f"{API_PRODUCT_NAME} access",
                attributes=[Attribute(name="access", value="internal")],
                api_resources=["/**"],
                environments=[self.args.env],
                proxies=[AUTH_PROXY_NAME],
            )
            if self.client.create_api_product(product) is None:
                self._verbose(f"product {API_PRODUCT_NAME} already exists")

            self._verbose(f"creating developer {email}...")
            developer = Developer(
                email=email,
                first_name=APP_NAME,
                last_name=APP_NAME,
                user_name=email,
            )
            if self.client.create_developer(developer) is None:
                self._verbose(f"developer {email} already exists")

            self._verbose(f"creating application {APP_NAME}...")
            app = self.client.create_developer_app(
                email,
                DeveloperApp(name=APP_NAME, api_products=[API_PRODUCT_NAME]),
            )
            if app is not None:
                if not app.credentials:
                    raise ProvisioningError(f"application {APP_NAME} was created without credentials")
                app_cred = app.credentials[0]
                self._verbose("credentials created")
                return Credential(key=app_cred.key, secret=app_cred.secret)

            self._verbose(f"application {APP_NAME} already exists, creating new credential...")
            app_cred = self.client.create_app_key(
                email,
                APP_NAME,
                AppCredential(key=_new_hash(), secret=_new_hash()),
            )
            self.client.add_products_to_key(email, APP_NAME, app_cred.key, [API_PRODUCT_NAME])
        except ManagementAPIError as e:
            raise ProvisioningError(f"generating credential: {e}") from e

        self._verbose("credentials created")
        return Credential(key=app_cred.key, secret=app_cred.secret)

    # Key-value map

    def create_kvm(self):
        """
        Create the encrypted remote-service KVM.

        Legacy/OPDK KVMs carry the signing key; hybrid KVMs are created empty
        and the key goes into the policy Secret instead.
        """
        kvm = KeyValueMap(name=KVM_NAME, encrypted=True)
        if not self.args.is_gcp_managed and self.signing_key is not None:
            kvm = KeyValueMap(
                name=KVM_NAME,
                encrypted=True,
                entries=[
                    KVMEntry(name="private_key", value=self.signing_key.private_key_pem),
                    KVMEntry(name="jwks", value=json.dumps(self.signing_key.jwks())),
                    KVMEntry(name="kid", value=self.signing_key.kid),
                ],
            )

        self._verbose(f"creating kvm {KVM_NAME}...")
        try:
            if self.client.create_kvm(kvm) is None:
                self._verbose(f"kvm {KVM_NAME} already exists")
        except ManagementAPIError as e:
            raise ProvisioningError(f"creating kvm {KVM_NAME}: {e}") from e

    # Verification

    def verify_remote_service_proxy(self, credential: Credential) -> List[str]:
        """
        Call the deployed proxy with the credential.

        TLS verification failures are errors unless the context allows
        insecure connections.

        Returns:
            One message per failed check; empty when all pass
        """
        client = HTTPClient(
            verify_ssl=not self.args.insecure_skip_verify,
            auth=(credential.key, credential.secret),
            transport=self.transport,
        )
        base = self.args.remote_service_proxy_url
        errors = []

        checks = [
            ("GET", f"{base}/certs", None, False),
            ("GET", f"{base}/products", None, False),
            ("POST", f"{base}/verifyApiKey", {"apiKey": credential.key}, True),
            ("POST", f"{base}/quotas", {}, False),
        ]
        for method, url, body, unauthorized_ok in checks:
            try:
                if body is None:
                    client.request(method, url)
                else:
                    client.request(method, url, json=body)
                self._verbose(f"verified {url}")
            except ManagementAPIError as e:
                if unauthorized_ok and e.is_unauthorized:
                    self._verbose(f"verified {url}")
                    continue
                errors.append(str(e))

        return errors

    # Output

    def create_config(self, credential: Credential) -> ServerConfig:
        internal_api = "" if self.args.is_gcp_managed else (self.args.internal_proxy_url or "")
        return ServerConfig(tenant=TenantConfig(
            internal_api=internal_api,
            remote_service_api=self.args.remote_service_proxy_url,
            org_name=self.args.org,
            env_name=self.args.env,
            key=credential.key,
            secret=credential.secret,
            allow_unverified_ssl_cert=self.args.insecure_skip_verify,
        ))

    def render_manifests(self, config: ServerConfig, credential: Credential) -> str:
        namespace = self.args.namespace
        documents = [
            render_config_map(config, namespace),
            render_credential_secret(self.args.org, self.args.env, namespace, credential.key, credential.secret),
        ]
        if self.args.is_gcp_managed and self.signing_key is not None:
            documents.append(render_policy_secret(
                self.args.org,
                self.args.env,
                namespace,
                self.signing_key.private_key_pem,
                self.signing_key.jwks(),
                self.signing_key.kid,
            ))
        return join_documents(documents)
