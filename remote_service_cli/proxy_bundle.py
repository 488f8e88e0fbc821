"""
Proxy bundles deployed by `provision`.

Bundles are built in memory as zip archives laid out the way the management
API expects for an import (apiproxy/<name>.xml plus apiproxy/proxies/).
"""

import io
import logging
import zipfile
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

AUTH_PROXY_NAME = "remote-service"
INTERNAL_PROXY_NAME = "edgemicro-internal"

AUTH_PROXY_BASE_PATH = "/remote-service"
INTERNAL_PROXY_BASE_PATH = "/edgemicro"


class ProxyBundleError(Exception):
    """Exception raised when a bundle cannot be built or read"""
    pass


def _xml(element: ET.Element) -> bytes:
    ET.indent(element)
    return ET.tostring(element, encoding="utf-8", xml_declaration=True)


def _proxy_descriptor(name: str, description: str) -> bytes:
    root = ET.Element("APIProxy", name=name)
    ET.SubElement(root, "Description").text = description
    ET.SubElement(root, "DisplayName").text = name
    endpoints = ET.SubElement(root, "ProxyEndpoints")
    ET.SubElement(endpoints, "ProxyEndpoint").text = "default"
    return _xml(root)


def _proxy_endpoint(base_path: str, virtual_hosts: List[str]) -> bytes:
    root = ET.Element("ProxyEndpoint", name="default")
    connection = ET.SubElement(root, "HTTPProxyConnection")
    ET.SubElement(connection, "BasePath").text = base_path
    for vh in virtual_hosts:
        ET.SubElement(connection, "VirtualHost").text = vh
    ET.SubElement(root, "RouteRule", name="noroute")
    return _xml(root)


def build_bundle(name: str, base_path: str, virtual_hosts: Optional[List[str]] = None, description: str = "") -> bytes:
    """
    Build a proxy bundle zip.

    Args:
        name: Proxy name
        base_path: Base path served by the default proxy endpoint
        virtual_hosts: Virtual hosts to bind; hybrid proxies take none
        description: Proxy description

    Returns:
        Zip archive bytes
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(f"apiproxy/{name}.xml", _proxy_descriptor(name, description or name))
        zf.writestr("apiproxy/proxies/default.xml", _proxy_endpoint(base_path, virtual_hosts or []))
    return buffer.getvalue()


def remote_service_bundle(virtual_hosts: Optional[List[str]] = None) -> bytes:
    return build_bundle(AUTH_PROXY_NAME, AUTH_PROXY_BASE_PATH, virtual_hosts, "Apigee Remote Service")


def internal_proxy_bundle(virtual_hosts: List[str]) -> bytes:
    return build_bundle(INTERNAL_PROXY_NAME, INTERNAL_PROXY_BASE_PATH, virtual_hosts, "Apigee Internal Proxy")


def read_bundle(path: str) -> bytes:
    """Read a user-supplied bundle zip."""
    p = Path(path)
    try:
        data = p.read_bytes()
    except OSError as e:
        raise ProxyBundleError(f"cannot read proxy bundle {path}: {e}") from e
    if not zipfile.is_zipfile(io.BytesIO(data)):
        raise ProxyBundleError(f"{path} is not a zip archive")
    logger.info(f"Using proxy bundle from {path}")
    return data
