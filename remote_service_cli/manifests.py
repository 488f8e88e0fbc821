"""
Kubernetes manifests for apigee-remote-service-envoy.

Renders the ConfigMap and Secrets printed by `provision` and
`token create-secret`, and loads a tenant configuration back from either a
plain config file or a file of those manifests.
"""

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from remote_service_cli.schemas import ServerConfig

logger = logging.getLogger(__name__)

CONFIG_MAP_NAME = "apigee-remote-service-envoy"
CONFIG_FILE_KEY = "config.yaml"

SECRET_KEY_KEY = "key"
SECRET_SECRET_KEY = "secret"
SECRET_PRIVATE_KEY = "remote-service.key"
SECRET_JWKS_KEY = "remote-service.crt"
SECRET_PROPERTIES_KEY = "remote-service.properties"


class ManifestError(Exception):
    """Exception raised when a configuration file cannot be loaded"""
    pass


class _LiteralStr(str):
    pass


class _Dumper(yaml.SafeDumper):
    pass


def _literal_representer(dumper, data):
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")


_Dumper.add_representer(_LiteralStr, _literal_representer)


def _dump(data: dict) -> str:
    return yaml.dump(data, Dumper=_Dumper, default_flow_style=False, sort_keys=False)


def _header(title: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return (
        f"# {title} for apigee-remote-service-envoy\n"
        f"# generated by apigee-remote-service-cli provision on {now.strftime('%Y-%m-%d %H:%M:%S')}\n"
    )


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def render_config_map(config: ServerConfig, namespace: str) -> str:
    """Render the envoy adapter ConfigMap, with config.yaml as a literal block."""
    tenant = config.tenant.model_dump(exclude={"key", "secret"})
    config_yaml = _dump({"tenant": tenant})
    doc = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": CONFIG_MAP_NAME,
            "namespace": namespace,
        },
        "data": {
            CONFIG_FILE_KEY: _LiteralStr(config_yaml),
        },
    }
    return _header("Configuration") + _dump(doc)


def _render_secret(name: str, namespace: str, data: Dict[str, str]) -> str:
    doc = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": name,
            "namespace": namespace,
        },
        "type": "Opaque",
        "data": {k: _b64(v) for k, v in data.items()},
    }
    return _header("Secret") + _dump(doc)


def render_credential_secret(org: str, env: str, namespace: str, key: str, secret: str) -> str:
    """Secret holding the provisioned application credential."""
    return _render_secret(
        f"{org}-{env}-apigee-remote-service-envoy",
        namespace,
        {SECRET_KEY_KEY: key, SECRET_SECRET_KEY: secret},
    )


def render_policy_secret(org: str, env: str, namespace: str, private_key_pem: str, jwks: dict, kid: str) -> str:
    """Secret holding the runtime signing key, its JWKS and kid."""
    return _render_secret(
        f"{org}-{env}-policy-secret",
        namespace,
        {
            SECRET_JWKS_KEY: json.dumps(jwks),
            SECRET_PRIVATE_KEY: private_key_pem,
            SECRET_PROPERTIES_KEY: f"kid={kid}",
        },
    )


def join_documents(documents: List[str]) -> str:
    return "---\n".join(documents)


def load_config(path: str) -> ServerConfig:
    """
    Load a tenant configuration.

    The file may be a plain config ({"tenant": {...}}) or a multi-document
    file of manifests: the ConfigMap's config.yaml supplies the tenant and a
    credential Secret, if present, supplies key and secret.

    Raises:
        ManifestError: If the file is unreadable or holds no tenant config
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            documents = [d for d in yaml.safe_load_all(f) if d]
    except OSError as e:
        raise ManifestError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ManifestError(f"invalid YAML in config file {path}: {e}") from e

    config_data = None
    secret_data: Dict[str, str] = {}

    for doc in documents:
        if not isinstance(doc, dict):
            continue
        kind = doc.get("kind")
        if kind == "ConfigMap":
            raw = (doc.get("data") or {}).get(CONFIG_FILE_KEY)
            if raw:
                try:
                    config_data = yaml.safe_load(raw)
                except yaml.YAMLError as e:
                    raise ManifestError(f"invalid {CONFIG_FILE_KEY} in ConfigMap: {e}") from e
        elif kind == "Secret":
            for k, v in (doc.get("data") or {}).items():
                try:
                    secret_data[k] = base64.b64decode(v).decode("utf-8")
                except (ValueError, TypeError) as e:
                    raise ManifestError(f"invalid base64 value for {k} in Secret") from e
        elif "tenant" in doc:
            config_data = doc

    if not isinstance(config_data, dict):
        raise ManifestError(f"no tenant configuration found in {path}")

    try:
        config = ServerConfig.model_validate(config_data)
    except ValidationError as e:
        raise ManifestError(f"invalid configuration in {path}: {e}") from e

    tenant = config.tenant
    if not tenant.key and secret_data.get(SECRET_KEY_KEY):
        tenant = tenant.model_copy(update={
            "key": secret_data[SECRET_KEY_KEY],
            "secret": secret_data.get(SECRET_SECRET_KEY, ""),
        })
        config = config.model_copy(update={"tenant": tenant})

    logger.info(f"Loaded configuration for {tenant.org_name}/{tenant.env_name} from {path}")
    return config
