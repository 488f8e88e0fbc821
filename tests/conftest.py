"""
Shared fixtures: a mock management/runtime API served through
httpx.MockTransport, so no test touches the network.
"""
import base64
import io
import json

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from remote_service_cli.cli import main

ORG = "org"
ENV = "env"
DEV_EMAIL = "developer@mock.net"

LEGACY_MGMT = "https://api.enterprise.apigee.com/v1/organizations/org"
LEGACY_CRED = "https://istioservices.apigee.net/edgemicro/credential/organization/org/environment/env"
LEGACY_REMOTE_SERVICE = "https://org-env.apigee.net/remote-service"

HYBRID_MGMT = "https://apigee.googleapis.com/v1/organizations/org"

MOCK_MANAGEMENT = "https://api.mock.apigee.com"
MOCK_RUNTIME = "https://mock.runtime.com"
OPDK_MGMT = MOCK_MANAGEMENT + "/v1/organizations/org"
RUNTIME_REMOTE_SERVICE = MOCK_RUNTIME + "/remote-service"


class MockAPI:
    """
    Routes requests by method and exact URL (query string ignored) and
    records every request in the order it was made.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, url, status=200, json_body=None, text="", handler=None):
        self.routes[(method, url)] = (status, json_body, text, handler)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        route = self.routes.get((request.method, url))
        if route is None:
            return httpx.Response(404, text=f"no route for {request.method} {url}")
        status, json_body, text, handler = route
        if handler is not None:
            return handler(request)
        if json_body is not None:
            return httpx.Response(status, json=json_body)
        return httpx.Response(status, text=text)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    @property
    def calls(self):
        return [(r.method, str(r.url).split("?")[0]) for r in self.requests]

    def requests_to(self, method, url):
        return [r for r in self.requests if r.method == method and str(r.url).split("?")[0] == url]


def add_remote_service_routes(api: MockAPI, base: str):
    """The four checks made against a deployed remote-service proxy."""
    api.add("GET", f"{base}/certs", json_body={"keys": []})
    api.add("GET", f"{base}/products", json_body={})
    api.add("POST", f"{base}/verifyApiKey", status=401, json_body={"error": "invalid key"})
    api.add("POST", f"{base}/quotas", json_body={})


def add_proxy_routes(api: MockAPI, mgmt: str, name: str):
    """Routes for a proxy that is neither deployed nor imported yet."""
    env = f"{mgmt}/environments/{ENV}"
    api.add("GET", f"{env}/apis/{name}/deployments", json_body={})
    api.add("GET", f"{mgmt}/apis/{name}", status=404, json_body={"code": "not found"})
    api.add("POST", f"{mgmt}/apis", status=201, json_body={"name": name, "revision": "1"})
    api.add("POST", f"{env}/apis/{name}/revisions/1/deployments", json_body={})


def basic_auth(key, secret):
    return "Basic " + base64.b64encode(f"{key}:{secret}".encode()).decode()


def request_json(request: httpx.Request):
    return json.loads(request.content) if request.content else None


@pytest.fixture
def mock_api():
    return MockAPI()


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def run_cli(argv, transport=None, stdin=""):
    """Run the CLI in-process; returns (exit code, stdout, stderr)."""
    stdout, stderr = io.StringIO(), io.StringIO()
    code = main(argv, stdout=stdout, stdin=io.StringIO(stdin), stderr=stderr, transport=transport)
    return code, stdout.getvalue(), stderr.getvalue()
