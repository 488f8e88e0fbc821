"""
Token Lifecycle Commands

Creates signed tokens through the remote-service proxy, inspects and
verifies them against its published key set, and rotates the signing key.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import httpx
import jwt
from pydantic import ValidationError

from remote_service_cli.config import settings
from remote_service_cli.management_client import HTTPClient, ManagementAPIError
from remote_service_cli.manifests import render_policy_secret
from remote_service_cli.schemas import RootArgs, RotateRequest, TokenRequest, TokenResponse
from remote_service_cli.signing_keys import SigningKey, SigningKeyError, parse_jwks

logger = logging.getLogger(__name__)

TOKEN_PATH = "/token"
CERTS_PATH = "/certs"
ROTATE_PATH = "/rotate"

ACCEPTABLE_SKEW_SECONDS = 60
SIGNING_ALGORITHM = "RS256"

REGISTERED_CLAIMS = ("aud", "exp", "iat", "iss", "jti", "nbf", "sub")


class TokenError(Exception):
    """Exception raised when a token command cannot complete"""
    pass


def ordered_claims(claims: Dict) -> Dict:
    """
    Registered claims first, in name order, then private claims in name order.

    `aud` is always shown as a list.
    """
    ordered = {}
    for name in REGISTERED_CLAIMS:
        if name in claims:
            ordered[name] = claims[name]
    if isinstance(ordered.get("aud"), str):
        ordered["aud"] = [ordered["aud"]]
    for name in sorted(claims):
        if name not in ordered:
            ordered[name] = claims[name]
    return ordered


@dataclass
class InspectResult:
    """Claims of an inspected token and whether it verified."""
    claims: Dict = field(default_factory=dict)
    valid: bool = False
    reason: str = ""


class TokenManager:
    """
    Handler for the `token` command group.

    All calls go to the remote-service proxy URL of the resolved context.
    """

    def __init__(
        self,
        args: RootArgs,
        printer: Callable[[str], None] = print,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.args = args
        self.printer = printer
        self.client = HTTPClient(verify_ssl=not args.insecure_skip_verify, transport=transport)

    def _verbose(self, message: str):
        logger.info(message)
        if self.args.verbose:
            self.printer(message)

    @property
    def remote_service_url(self) -> str:
        if not self.args.remote_service_proxy_url:
            raise TokenError("--runtime or --config is required")
        return self.args.remote_service_proxy_url

    def create_token(self, client_id: str, client_secret: str) -> str:
        """
        Obtain a token for a client id/secret and print it.

        Raises:
            TokenError: If the token endpoint fails or returns no token
        """
        if not client_id or not client_secret:
            raise TokenError("--id and --secret are required")

        url = self.remote_service_url + TOKEN_PATH
        request = TokenRequest(client_id=client_id, client_secret=client_secret)
        self._verbose(f"requesting token from {url}...")
        try:
            response = self.client.request("POST", url, json=request.model_dump())
            token = TokenResponse.model_validate(self.client.json_body(response)).token
        except ManagementAPIError as e:
            raise TokenError(f"creating token: {e}") from e
        except ValidationError as e:
            raise TokenError(f"creating token: unexpected response: {e}") from e

        self.printer(token)
        return token

    def fetch_jwks(self) -> List[Dict]:
        """Fetch the keys currently published by the remote-service proxy."""
        url = self.remote_service_url + CERTS_PATH
        self._verbose(f"fetching certs from {url}...")
        try:
            response = self.client.request("GET", url)
            return parse_jwks(self.client.json_body(response))
        except (ManagementAPIError, SigningKeyError) as e:
            raise TokenError(f"fetching certs: {e}") from e

    def inspect_token(self, token_string: str) -> InspectResult:
        """
        Print a token's claims and verify it against the published keys.

        An unverifiable token is reported as "invalid token: <reason>" and
        returned as an invalid result; only malformed input or a failure to
        fetch the keys raises.

        Raises:
            TokenError: If the token cannot be parsed or keys not fetched
        """
        token_string = token_string.strip()
        try:
            header = jwt.get_unverified_header(token_string)
            claims = jwt.decode(token_string, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            raise TokenError(f"parsing jwt token: {e}") from e

        self.printer(json.dumps(ordered_claims(claims), indent="\t"))

        self.printer("\nverifying...")
        keys = self.fetch_jwks()
        result = self._verify(token_string, header, keys)
        result.claims = claims

        if result.valid:
            self.printer("valid token")
        else:
            self.printer(f"invalid token: {result.reason}")
        return result

    def _verify(self, token_string: str, header: Dict, keys: List[Dict]) -> InspectResult:
        kid = header.get("kid")
        candidates = [k for k in keys if kid and k.get("kid") == kid] or keys

        for jwk in candidates:
            try:
                key = jwt.PyJWK(jwk, algorithm=SIGNING_ALGORITHM).key
            except (jwt.PyJWTError, ValueError) as e:
                logger.debug(f"Skipping unusable key {jwk.get('kid')}: {e}")
                continue
            try:
                jwt.decode(
                    token_string,
                    key,
                    algorithms=[SIGNING_ALGORITHM],
                    leeway=ACCEPTABLE_SKEW_SECONDS,
                    options={"verify_aud": False},
                )
                return InspectResult(valid=True)
            except jwt.InvalidSignatureError:
                continue
            except jwt.PyJWTError as e:
                return InspectResult(valid=False, reason=str(e))

        return InspectResult(valid=False, reason="signature verification failed")

    def _tenant_credentials(self, key: Optional[str], secret: Optional[str]):
        tenant = self.args.server_config.tenant if self.args.server_config else None
        key = key or (tenant.key if tenant else "")
        secret = secret or (tenant.secret if tenant else "")
        if not key or not secret:
            raise TokenError("tenant key and secret are required (--config or --key/--secret)")
        return key, secret

    def rotate_cert(
        self,
        kid: Optional[str] = None,
        truncate: Optional[int] = None,
        key: Optional[str] = None,
        secret: Optional[str] = None,
    ) -> Dict:
        """
        Publish a new signing key and retire the oldest ones.

        Fetches the current JWKS, generates a key, and posts the private key
        with the rotated JWKS to the proxy's rotate endpoint.

        Returns:
            The JWKS that was published
        """
        truncate = settings.default_truncate if truncate is None else truncate
        key, secret = self._tenant_credentials(key, secret)

        existing = self.fetch_jwks()

        self._verbose("generating a new key...")
        signing_key = SigningKey(kid=kid)
        jwks = signing_key.jwks(existing, truncate)
        self._verbose(f"new kid: {signing_key.kid}")

        url = self.remote_service_url + ROTATE_PATH
        self._verbose(f"rotating cert on {url}...")
        rotate_request = RotateRequest(private_key=signing_key.private_key_pem, jwks=jwks, kid=signing_key.kid)
        try:
            self.client.request("POST", url, auth=(key, secret), json=rotate_request.model_dump())
        except ManagementAPIError as e:
            raise TokenError(f"certificate rotation failed: {e}") from e

        self.printer("certificate successfully rotated")
        return jwks

    def create_secret(
        self,
        kid: Optional[str] = None,
        truncate: Optional[int] = None,
        namespace: Optional[str] = None,
    ) -> str:
        """
        Print a policy Secret holding a new signing key.

        The Secret's JWKS is the currently published set with the new key
        prepended, so it can be applied to the cluster as a rotation.
        """
        if not self.args.org or not self.args.env:
            raise TokenError("--org and --env are required")
        truncate = settings.default_truncate if truncate is None else truncate
        namespace = namespace or self.args.namespace

        existing = self.fetch_jwks()
        signing_key = SigningKey(kid=kid)
        jwks = signing_key.jwks(existing, truncate)

        secret_yaml = render_policy_secret(
            self.args.org,
            self.args.env,
            namespace,
            signing_key.private_key_pem,
            jwks,
            signing_key.kid,
        )
        self.printer(secret_yaml)
        return secret_yaml
