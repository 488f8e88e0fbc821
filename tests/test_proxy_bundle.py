"""
Tests for proxy bundle building
"""
import io
import zipfile
import xml.etree.ElementTree as ET

import pytest

from remote_service_cli.proxy_bundle import (
    ProxyBundleError,
    internal_proxy_bundle,
    read_bundle,
    remote_service_bundle,
)


def open_bundle(data):
    return zipfile.ZipFile(io.BytesIO(data))


class TestBuildBundle:
    """Tests for built-in bundles"""

    def test_layout(self):
        with open_bundle(remote_service_bundle(["default", "secure"])) as zf:
            assert sorted(zf.namelist()) == ["apiproxy/proxies/default.xml", "apiproxy/remote-service.xml"]
            descriptor = ET.fromstring(zf.read("apiproxy/remote-service.xml"))
            endpoint = ET.fromstring(zf.read("apiproxy/proxies/default.xml"))

        assert descriptor.get("name") == "remote-service"
        assert endpoint.find("HTTPProxyConnection/BasePath").text == "/remote-service"
        assert [v.text for v in endpoint.findall("HTTPProxyConnection/VirtualHost")] == ["default", "secure"]

    def test_no_virtual_hosts(self):
        """Hybrid bundles bind no virtual hosts"""
        with open_bundle(remote_service_bundle()) as zf:
            endpoint = ET.fromstring(zf.read("apiproxy/proxies/default.xml"))

        assert endpoint.findall("HTTPProxyConnection/VirtualHost") == []

    def test_internal_proxy(self):
        with open_bundle(internal_proxy_bundle(["default"])) as zf:
            endpoint = ET.fromstring(zf.read("apiproxy/proxies/default.xml"))
            assert "apiproxy/edgemicro-internal.xml" in zf.namelist()

        assert endpoint.find("HTTPProxyConnection/BasePath").text == "/edgemicro"


class TestReadBundle:
    def test_reads_zip(self, tmp_path):
        path = tmp_path / "bundle.zip"
        path.write_bytes(remote_service_bundle())

        assert read_bundle(str(path)) == path.read_bytes()

    def test_not_a_zip(self, tmp_path):
        path = tmp_path / "bundle.zip"
        path.write_text("nope")

        with pytest.raises(ProxyBundleError, match="not a zip"):
            read_bundle(str(path))

    def test_missing(self, tmp_path):
        with pytest.raises(ProxyBundleError, match="cannot read"):
            read_bundle(str(tmp_path / "missing.zip"))
