#!/usr/bin/env python3
"""
Command-line interface for apigee-remote-service-cli.

Commands:
    provision                 Deploy the remote-service proxy and create its credential
    token create              Create a token for a client id/secret
    token inspect             Print and verify a token (from --file or stdin)
    token rotate-cert         Publish a new signing key for the runtime
    token create-secret       Print a policy Secret holding a new signing key
    version                   Print the CLI version

Usage:
    remote-service-cli provision -o ORG -e ENV -u USER -p PASSWORD --legacy
    remote-service-cli provision -o ORG -e ENV -t TOKEN -r https://runtime -d dev@example.com
    remote-service-cli token rotate-cert -c config.yaml
"""

import argparse
import logging
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version
from pathlib import Path
from typing import Optional, Sequence

import httpx
from dotenv import load_dotenv
from pydantic import ValidationError

from remote_service_cli.config import settings
from remote_service_cli.management_client import ManagementAPIError
from remote_service_cli.manifests import ManifestError
from remote_service_cli.provisioner import ProvisioningError, RemoteServiceProvisioner
from remote_service_cli.proxy_bundle import ProxyBundleError
from remote_service_cli.schemas import ContextError, RootArgs
from remote_service_cli.signing_keys import SigningKeyError
from remote_service_cli.token_manager import TokenError, TokenManager

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

HANDLED_ERRORS = (
    ContextError,
    ManagementAPIError,
    ManifestError,
    ProvisioningError,
    ProxyBundleError,
    SigningKeyError,
    TokenError,
    ValidationError,
)


def _cli_version() -> str:
    try:
        return pkg_version("remote-service-cli")
    except PackageNotFoundError:
        return "0.0.0+local"


def _add_root_flags(parser: argparse.ArgumentParser, management: bool = False):
    """Flags shared by every command that talks to a runtime."""
    parser.add_argument("-o", "--org", help="Apigee organization name")
    parser.add_argument("-e", "--env", help="Apigee environment name")
    parser.add_argument(
        "-r", "--runtime",
        help="Apigee runtime base URL (required for hybrid or opdk)",
    )
    parser.add_argument("-c", "--config", help="Path to Apigee Remote Service config file")
    parser.add_argument(
        "-n", "--namespace",
        default=settings.default_namespace,
        help="Emit configuration in the specified namespace (default: %(default)s)",
    )
    parser.add_argument("--legacy", action="store_true", help="Apigee SaaS (sets management and runtime URL)")
    parser.add_argument("--opdk", action="store_true", help="Apigee opdk")
    parser.add_argument("--insecure", action="store_true", help="Allow insecure server connections when using SSL")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    if management:
        parser.add_argument("-m", "--management", help="Apigee management base URL (required for opdk)")
        parser.add_argument("-u", "--username", help="Apigee username (legacy or opdk only)")
        parser.add_argument("-p", "--password", help="Apigee password (legacy or opdk only)")
        parser.add_argument("-t", "--token", help="Apigee OAuth or SAML token (hybrid only)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="remote-service-cli",
        description="Provision and manage Apigee Remote Service",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    provision = sub.add_parser("provision", help="Provision your Apigee environment for remote services")
    _add_root_flags(provision, management=True)
    provision.add_argument(
        "-d", "--developer-email",
        help="email used to create a developer (ignored for --legacy or --opdk)",
    )
    provision.add_argument(
        "-f", "--force-proxy-install",
        action="store_true",
        help="force new proxy install (upgrades proxy)",
    )
    provision.add_argument(
        "--virtual-hosts",
        default=settings.default_virtual_hosts,
        help="override proxy virtualHosts (default: %(default)s)",
    )
    provision.add_argument(
        "--verify-only",
        action="store_true",
        help="verify only, don't provision anything",
    )
    provision.add_argument("-k", "--key", help="gateway key (for --verify-only)")
    provision.add_argument("-s", "--secret", help="gateway secret (for --verify-only)")
    provision.add_argument("--bundle", help="deploy this proxy bundle zip instead of the built-in one")
    provision.add_argument("--output-file", help="also write the generated configuration to this file")

    token = sub.add_parser("token", help="JWT token utilities")
    token_sub = token.add_subparsers(dest="token_command", required=True)

    create = token_sub.add_parser("create", help="create a new OAuth token")
    _add_root_flags(create)
    create.add_argument("-i", "--id", dest="client_id", help="client id")
    create.add_argument("-s", "--secret", dest="client_secret", help="client secret")

    inspect = token_sub.add_parser("inspect", help="inspect a JWT token")
    _add_root_flags(inspect)
    inspect.add_argument("-f", "--file", help="token file (default: use stdin)")

    rotate = token_sub.add_parser("rotate-cert", help="rotate JWT certificate")
    _add_root_flags(rotate)
    rotate.add_argument("--kid", help="new key id (default: current time)")
    rotate.add_argument(
        "--truncate",
        type=int,
        default=settings.default_truncate,
        help="number of certs to keep in jwks (default: %(default)s)",
    )
    rotate.add_argument("-k", "--key", help="provisioning key")
    rotate.add_argument("-s", "--secret", help="provisioning secret")

    secret = token_sub.add_parser("create-secret", help="create Kubernetes secret for JWT signing")
    _add_root_flags(secret)
    secret.add_argument("--kid", help="new key id (default: current time)")
    secret.add_argument(
        "--truncate",
        type=int,
        default=settings.default_truncate,
        help="number of certs to keep in jwks (default: %(default)s)",
    )

    sub.add_parser("version", help="Prints build version")

    return parser


def _root_args(ns: argparse.Namespace) -> RootArgs:
    return RootArgs(
        org=ns.org,
        env=ns.env,
        username=getattr(ns, "username", None),
        password=getattr(ns, "password", None),
        token=getattr(ns, "token", None),
        runtime_base=ns.runtime,
        management_base=getattr(ns, "management", None),
        legacy=ns.legacy,
        opdk=ns.opdk,
        insecure_skip_verify=ns.insecure,
        namespace=ns.namespace,
        config_path=ns.config,
        verbose=ns.verbose,
    )


def _provision(ns: argparse.Namespace, printer, transport) -> int:
    args = _root_args(ns).resolve(skip_auth=ns.verify_only, require_runtime=False)
    virtual_hosts = [v.strip() for v in ns.virtual_hosts.split(",") if v.strip()]

    provisioner = RemoteServiceProvisioner(
        args,
        developer_email=ns.developer_email,
        force_proxy_install=ns.force_proxy_install,
        virtual_hosts=virtual_hosts,
        verify_only=ns.verify_only,
        key=ns.key,
        secret=ns.secret,
        bundle_path=ns.bundle,
        printer=printer,
        transport=transport,
    )
    result = provisioner.run()

    printer(result.manifests)
    if ns.output_file:
        Path(ns.output_file).write_text(result.manifests, encoding="utf-8")
        logger.info(f"Wrote configuration to {ns.output_file}")

    if not result.verified:
        raise ProvisioningError("verification failed:\n  " + "\n  ".join(result.verification_errors))
    return EXIT_SUCCESS


def _token(ns: argparse.Namespace, printer, stdin, transport) -> int:
    args = _root_args(ns).resolve(skip_auth=True, require_runtime=False)
    manager = TokenManager(args, printer=printer, transport=transport)

    if ns.token_command == "create":
        manager.create_token(ns.client_id, ns.client_secret)
    elif ns.token_command == "inspect":
        if ns.file:
            try:
                token_string = Path(ns.file).read_text(encoding="utf-8")
            except OSError as e:
                raise TokenError(f"reading token file {ns.file}: {e}") from e
        else:
            token_string = stdin.read()
        manager.inspect_token(token_string)
    elif ns.token_command == "rotate-cert":
        manager.rotate_cert(kid=ns.kid, truncate=ns.truncate, key=ns.key, secret=ns.secret)
    elif ns.token_command == "create-secret":
        manager.create_secret(kid=ns.kid, truncate=ns.truncate, namespace=ns.namespace)
    return EXIT_SUCCESS


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    stdout=None,
    stdin=None,
    stderr=None,
    transport: Optional[httpx.BaseTransport] = None,
) -> int:
    stdout = stdout or sys.stdout
    stdin = stdin or sys.stdin
    stderr = stderr or sys.stderr

    load_dotenv()
    ns = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if getattr(ns, "verbose", False) else settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    def printer(message: str):
        print(message, file=stdout)

    try:
        if ns.command == "provision":
            return _provision(ns, printer, transport)
        if ns.command == "token":
            return _token(ns, printer, stdin, transport)
        printer(f"apigee-remote-service-cli version {_cli_version()}")
        return EXIT_SUCCESS
    except HANDLED_ERRORS as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
