"""
RSA signing keys and JSON Web Key Sets for the remote-service proxy.

New keys are published at the head of the JWKS; rotation keeps a bounded
number of previous keys so tokens signed with them still verify until the
set is truncated.
"""
import base64
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

_PUBLIC_EXPONENT = 65537


class SigningKeyError(Exception):
    """Exception raised for unusable key material or key sets"""
    pass


def generate_private_key(bits: Optional[int] = None) -> rsa.RSAPrivateKey:
    """Generate a new RSA private key (default size from settings)."""
    if bits is None:
        from remote_service_cli.config import settings
        bits = settings.key_bits
    return rsa.generate_private_key(public_exponent=_PUBLIC_EXPONENT, key_size=bits)


def private_key_to_pem(key: rsa.RSAPrivateKey) -> str:
    """Serialize as an unencrypted PKCS#1 PEM ("RSA PRIVATE KEY")."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except ValueError as e:
        raise SigningKeyError(f"invalid private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningKeyError("private key is not an RSA key")
    return key


def new_kid(now: Optional[datetime] = None) -> str:
    """Key id for a new key: the current UTC time in RFC 3339."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key: rsa.RSAPublicKey, kid: str) -> Dict[str, str]:
    """Export an RSA public key as a JWK with the given kid."""
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": "RS256",
        "use": "sig",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


def parse_jwks(data) -> List[Dict]:
    """
    Extract the list of JWKs from a fetched key set.

    Accepts a standard {"keys": [...]} document or a single bare JWK.

    Raises:
        SigningKeyError: If the document holds neither
    """
    if isinstance(data, dict):
        if isinstance(data.get("keys"), list):
            return [k for k in data["keys"] if isinstance(k, dict)]
        if "kty" in data:
            return [data]
    raise SigningKeyError("response is not a JSON Web Key Set")


def rotate_jwks(existing: List[Dict], new_jwk: Dict, truncate: int) -> Dict[str, List[Dict]]:
    """
    Build the key set published after a rotation.

    The new key comes first, followed by the existing keys (minus any with
    the same kid). Only the first `truncate` keys are kept; a value below
    one keeps them all.
    """
    keys = [new_jwk] + [k for k in existing if k.get("kid") != new_jwk.get("kid")]
    if truncate >= 1 and len(keys) > truncate:
        retired = [k.get("kid") for k in keys[truncate:]]
        logger.info(f"Retiring {len(retired)} key(s) from JWKS: {retired}")
        keys = keys[:truncate]
    return {"keys": keys}


class SigningKey:
    """A freshly generated private key together with its kid and JWK."""

    def __init__(self, kid: Optional[str] = None, bits: Optional[int] = None):
        self.kid = kid or new_kid()
        self.private_key = generate_private_key(bits)

    @property
    def private_key_pem(self) -> str:
        return private_key_to_pem(self.private_key)

    @property
    def jwk(self) -> Dict[str, str]:
        return public_key_to_jwk(self.private_key.public_key(), self.kid)

    def jwks(self, existing: Optional[List[Dict]] = None, truncate: int = 0) -> Dict[str, List[Dict]]:
        return rotate_jwks(existing or [], self.jwk, truncate)
