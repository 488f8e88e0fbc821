"""
Tests for Pydantic schemas and context resolution
"""
import pytest
import yaml
from pydantic import ValidationError

from remote_service_cli.schemas import (
    ApiProduct,
    ContextError,
    Developer,
    KeyValueMap,
    KVMEntry,
    RootArgs,
)


class TestRootArgsResolve:
    """Tests for mode defaults"""

    def test_legacy_defaults(self):
        """Legacy derives management, runtime and internal URLs"""
        args = RootArgs(org="org", env="env", username="u", password="p", legacy=True).resolve()

        assert args.mode == "legacy"
        assert args.management_base == "https://api.enterprise.apigee.com"
        assert args.runtime_base == "https://org-env.apigee.net"
        assert args.internal_proxy_url == "https://istioservices.apigee.net/edgemicro"
        assert args.remote_service_proxy_url == "https://org-env.apigee.net/remote-service"

    def test_hybrid_defaults(self):
        args = RootArgs(org="org", env="env", token="t", runtime_base="https://rt.example.com/").resolve()

        assert args.mode == "hybrid"
        assert args.is_gcp_managed
        assert args.management_base == "https://apigee.googleapis.com"
        assert args.remote_service_proxy_url == "https://rt.example.com/remote-service"
        assert args.internal_proxy_url is None

    def test_opdk_defaults(self):
        args = RootArgs(
            org="org", env="env", username="u", password="p", opdk=True,
            management_base="https://mgmt.example.com", runtime_base="https://rt.example.com",
        ).resolve()

        assert args.is_opdk
        assert args.internal_proxy_url == "https://rt.example.com/edgemicro"
        assert args.remote_service_proxy_url == "https://rt.example.com/remote-service"

    def test_resolve_does_not_mutate(self):
        args = RootArgs(org="org", env="env", username="u", password="p", legacy=True)
        args.resolve()

        assert args.runtime_base is None

    def test_legacy_and_opdk_exclusive(self):
        with pytest.raises(ValidationError):
            RootArgs(legacy=True, opdk=True)

    def test_runtime_required(self):
        with pytest.raises(ContextError, match="--runtime"):
            RootArgs(org="org", env="env", token="t").resolve()

    def test_hybrid_requires_token(self):
        with pytest.raises(ContextError, match="--token"):
            RootArgs(org="org", env="env", runtime_base="https://rt").resolve()

    def test_legacy_requires_credentials(self):
        with pytest.raises(ContextError, match="--username and --password"):
            RootArgs(org="org", env="env", username="u", legacy=True).resolve()

    def test_legacy_accepts_token(self):
        args = RootArgs(org="org", env="env", token="t", legacy=True).resolve()
        assert args.token == "t"

    def test_skip_auth(self):
        args = RootArgs(runtime_base="https://rt").resolve(skip_auth=True)
        assert args.remote_service_proxy_url == "https://rt/remote-service"

    def test_config_file_fills_context(self, tmp_path):
        """Org, env, URLs and TLS setting come from the config file"""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"tenant": {
            "internal_api": "https://internal.example.com/edgemicro/",
            "remote_service_api": "https://rt.example.com/remote-service/",
            "org_name": "cfg-org",
            "env_name": "cfg-env",
            "key": "k",
            "secret": "s",
            "allow_unverified_ssl_cert": True,
        }}))

        args = RootArgs(config_path=str(path)).resolve(skip_auth=True)

        assert args.org == "cfg-org"
        assert args.env == "cfg-env"
        assert args.internal_proxy_url == "https://internal.example.com/edgemicro"
        assert args.remote_service_proxy_url == "https://rt.example.com/remote-service"
        assert args.insecure_skip_verify is True
        assert args.server_config.tenant.key == "k"

    def test_flags_override_config_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"tenant": {"org_name": "cfg-org", "env_name": "cfg-env"}}))

        args = RootArgs(org="flag-org", runtime_base="https://rt", config_path=str(path)).resolve(skip_auth=True)

        assert args.org == "flag-org"
        assert args.env == "cfg-env"


class TestPayloads:
    """Tests for management API payload models"""

    def test_api_product_aliases(self):
        product = ApiProduct(name="p", display_name="P", api_resources=["/**"])

        data = product.model_dump(by_alias=True)
        assert data["displayName"] == "P"
        assert data["approvalType"] == "auto"
        assert data["apiResources"] == ["/**"]

    def test_developer_email_validated(self):
        with pytest.raises(ValidationError):
            Developer(email="not-an-email", first_name="a", last_name="b", user_name="c")

    def test_kvm_entries_alias(self):
        kvm = KeyValueMap(name="m", entries=[KVMEntry(name="kid", value="1")])

        assert kvm.model_dump(by_alias=True) == {
            "name": "m",
            "encrypted": True,
            "entry": [{"name": "kid", "value": "1"}],
        }
