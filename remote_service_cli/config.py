from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Legacy SaaS (Edge cloud)
    legacy_management_url: str = "https://api.enterprise.apigee.com"
    legacy_internal_proxy_url: str = "https://istioservices.apigee.net/edgemicro"
    legacy_runtime_url_template: str = "https://{org}-{env}.apigee.net"

    # Hybrid / GCP managed
    gcp_management_url: str = "https://apigee.googleapis.com"

    # HTTP
    http_timeout: float = 60.0

    # Logging
    log_level: str = "WARNING"

    # Provisioning defaults
    default_namespace: str = "apigee"
    default_virtual_hosts: str = "default,secure"

    # Signing keys
    key_bits: int = 2048
    default_truncate: int = 2  # keys kept in a rotated JWKS

    @property
    def default_virtual_hosts_list(self) -> List[str]:
        return [v.strip() for v in self.default_virtual_hosts.split(",") if v.strip()]

    class Config:
        env_file = ".env"
        env_prefix = "REMOTE_SERVICE_"
        case_sensitive = False


settings = Settings()
