from pydantic import BaseModel, EmailStr, Field, validator
from typing import List, Dict, Optional

MODE_LEGACY = "legacy"
MODE_HYBRID = "hybrid"
MODE_OPDK = "opdk"


class ContextError(ValueError):
    """Raised when command-line arguments cannot form a provisioning context"""
    pass


class TenantConfig(BaseModel):
    internal_api: str = ""
    remote_service_api: str = ""
    org_name: str = ""
    env_name: str = ""
    key: str = ""
    secret: str = ""
    allow_unverified_ssl_cert: bool = False


class ServerConfig(BaseModel):
    tenant: TenantConfig = TenantConfig()

    class Config:
        extra = "ignore"


class RootArgs(BaseModel):
    """
    Provisioning context shared by every command.

    Built once from command-line flags; `resolve` returns a copy with the
    per-mode defaults filled in. Instances are never mutated.
    """
    org: Optional[str] = None
    env: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None

    runtime_base: Optional[str] = None
    management_base: Optional[str] = None
    internal_proxy_url: Optional[str] = None
    remote_service_proxy_url: Optional[str] = None

    legacy: bool = False
    opdk: bool = False
    insecure_skip_verify: bool = False
    namespace: str = "apigee"
    config_path: Optional[str] = None
    verbose: bool = False

    server_config: Optional[ServerConfig] = None

    @validator("opdk")
    def validate_mode(cls, v, values):
        if v and values.get("legacy"):
            raise ValueError("--legacy and --opdk are mutually exclusive")
        return v

    @validator("runtime_base", "management_base", "internal_proxy_url", "remote_service_proxy_url")
    def strip_trailing_slash(cls, v):
        if v:
            return v.rstrip("/")
        return v

    @property
    def mode(self) -> str:
        if self.legacy:
            return MODE_LEGACY
        if self.opdk:
            return MODE_OPDK
        return MODE_HYBRID

    @property
    def is_legacy_saas(self) -> bool:
        return self.mode == MODE_LEGACY

    @property
    def is_opdk(self) -> bool:
        return self.mode == MODE_OPDK

    @property
    def is_gcp_managed(self) -> bool:
        return self.mode == MODE_HYBRID

    def resolve(self, skip_auth: bool = False, require_runtime: bool = True) -> "RootArgs":
        """
        Fill in mode defaults and validate the combination of flags.

        Args:
            skip_auth: Don't require management credentials
            require_runtime: Require a runtime (or remote-service proxy) URL

        Returns:
            A new, resolved RootArgs

        Raises:
            ContextError: If a required value is missing
        """
        from remote_service_cli.config import settings

        values = self.model_dump()
        server_config = self.server_config

        if self.config_path:
            from remote_service_cli.manifests import load_config
            server_config = load_config(self.config_path)
            tenant = server_config.tenant
            values["org"] = values["org"] or tenant.org_name or None
            values["env"] = values["env"] or tenant.env_name or None
            values["internal_proxy_url"] = values["internal_proxy_url"] or tenant.internal_api.rstrip("/") or None
            values["remote_service_proxy_url"] = (
                values["remote_service_proxy_url"] or tenant.remote_service_api.rstrip("/") or None
            )
            if tenant.allow_unverified_ssl_cert:
                values["insecure_skip_verify"] = True

        if self.is_legacy_saas:
            values["management_base"] = values["management_base"] or settings.legacy_management_url
            if not values["runtime_base"] and values["org"] and values["env"]:
                values["runtime_base"] = settings.legacy_runtime_url_template.format(
                    org=values["org"], env=values["env"]
                )
            values["internal_proxy_url"] = values["internal_proxy_url"] or settings.legacy_internal_proxy_url
        elif self.is_opdk:
            if values["runtime_base"] and not values["internal_proxy_url"]:
                values["internal_proxy_url"] = f"{values['runtime_base']}/edgemicro"
        else:
            values["management_base"] = values["management_base"] or settings.gcp_management_url

        if values["runtime_base"] and not values["remote_service_proxy_url"]:
            values["remote_service_proxy_url"] = f"{values['runtime_base']}/remote-service"

        if require_runtime and not values["remote_service_proxy_url"]:
            raise ContextError("--runtime is required")

        if not skip_auth:
            if self.is_opdk and not values["management_base"]:
                raise ContextError("--management is required for --opdk")
            if self.is_gcp_managed and not values["token"]:
                raise ContextError("--token is required for hybrid")
            if not self.is_gcp_managed and not values["token"] and not (values["username"] and values["password"]):
                raise ContextError("--username and --password are required for --legacy or --opdk")

        values["server_config"] = server_config
        return self.model_copy(update=values)

    class Config:
        frozen = True


# Management API payloads

class Attribute(BaseModel):
    name: str
    value: str


class ApiProduct(BaseModel):
    name: str
    display_name: str = Field(alias="displayName")
    approval_type: str = Field(default="auto", alias="approvalType")
    description: str = ""
    attributes: List[Attribute] = []
    api_resources: List[str] = Field(default=[], alias="apiResources")
    environments: List[str] = []
    proxies: List[str] = []

    class Config:
        populate_by_name = True


class Developer(BaseModel):
    email: EmailStr
    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    user_name: str = Field(alias="userName")
    attributes: List[Attribute] = []

    class Config:
        populate_by_name = True


class AppCredential(BaseModel):
    key: str = Field(alias="consumerKey")
    secret: str = Field(alias="consumerSecret")

    class Config:
        populate_by_name = True


class AppCredentialDetails(BaseModel):
    api_products: List[str] = Field(default=[], alias="apiProducts")
    attributes: List[Attribute] = []

    class Config:
        populate_by_name = True


class DeveloperApp(BaseModel):
    name: str
    api_products: List[str] = Field(default=[], alias="apiProducts")
    credentials: List[AppCredential] = []

    class Config:
        populate_by_name = True
        extra = "ignore"


class Cache(BaseModel):
    name: str
    description: str = ""


class KVMEntry(BaseModel):
    name: str
    value: str


class KeyValueMap(BaseModel):
    name: str
    encrypted: bool = True
    entries: List[KVMEntry] = Field(default=[], alias="entry")

    class Config:
        populate_by_name = True


class Credential(BaseModel):
    """Key/secret pair identifying the deployed remote-service proxy's caller"""
    key: str = ""
    secret: str = ""


# Runtime (remote-service proxy) payloads

class TokenRequest(BaseModel):
    client_id: str
    client_secret: str
    grant_type: str = "client_credentials"


class TokenResponse(BaseModel):
    token: str


class RotateRequest(BaseModel):
    private_key: str
    jwks: Dict
    kid: str
