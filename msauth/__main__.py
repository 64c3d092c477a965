#!/usr/bin/env python3
"""
Command Line Interface
======================
Thin wrapper that turns flags and environment variables into an
``AuthConfig`` and runs one authentication pass.

Run with::

    python -m msauth login --url https://contoso.sharepoint.com --email user@contoso.com
    python -m msauth env-help

Exit code 0 on success, 1 on any fatal error.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv
from playwright.async_api import Error as PlaywrightError

from .auth.authenticator import MsAuthenticator
from .errors import MsAuthError
from .providers.factory import CredentialProviderFactory
from .run_config import ENV_HELP, AuthConfig, EnvVars

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S',
        force=True,
    )
    # azure-identity is chatty at INFO
    logging.getLogger("azure").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='msauth',
        description='Microsoft Entra authentication CLI for Playwright',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m msauth login -u https://contoso.sharepoint.com -e user@contoso.com \\
      -p local-file --local-file ./user.pfx -t certificate
  python -m msauth login -u https://make.powerapps.com --password '...' --headful
  python -m msauth env-help
        """
    )
    sub = parser.add_subparsers(dest='command')

    login = sub.add_parser('login', help='Perform Microsoft Entra authentication and save storage state')
    login.add_argument('-u', '--url', required=True, help='Target URL to authenticate against')
    login.add_argument('-e', '--email', help=f'User email (or set {EnvVars.EMAIL})')
    login.add_argument(
        '-t', '--credential-type', choices=['password', 'certificate'],
        help=f'Credential type (or set {EnvVars.CREDENTIAL_TYPE}, default: password)',
    )
    login.add_argument(
        '-p', '--credential-provider',
        help=f'Credential provider: {"|".join(CredentialProviderFactory.supported_providers())} '
             f'(or set {EnvVars.CREDENTIAL_PROVIDER}, default: azure-keyvault)',
    )

    providers = login.add_argument_group('Credential providers')
    providers.add_argument('--keyvault-endpoint', help=f'Azure KeyVault endpoint (or set {EnvVars.KEYVAULT_ENDPOINT})')
    providers.add_argument('--keyvault-secret', help=f'Azure KeyVault secret name (or set {EnvVars.KEYVAULT_SECRET_NAME})')
    providers.add_argument('--local-file', help=f'Local credential file (or set {EnvVars.LOCAL_FILE_PATH})')
    providers.add_argument('--env-variable', help=f'Environment variable holding the credential (or set {EnvVars.ENV_VARIABLE_NAME})')
    providers.add_argument(
        '--password',
        help='Password for authentication (not recommended, use a credential provider instead)',
    )
    providers.add_argument('--github-repo', help=f'GitHub repository owner/repo (or set {EnvVars.GITHUB_REPOSITORY})')
    providers.add_argument('--github-secret', help=f'GitHub secret name (or set {EnvVars.GITHUB_SECRET_NAME})')

    login.add_argument('--output-dir', help=f'Output directory for storage state (or set {EnvVars.OUTPUT_DIR})')
    login.add_argument('--headful', action='store_true', help='Run browser in headful mode (visible window)')
    login.add_argument('--debug', action='store_true', help='Enable debug logging')

    sub.add_parser('env-help', help='Show all supported environment variables')
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def print_env_help() -> None:
    print("Supported Environment Variables:\n")
    for section, entries in ENV_HELP:
        print(f"{section}:")
        width = max(len(name) for name, _ in entries)
        for name, description in entries:
            print(f"  {name.ljust(width)}  - {description}")
        print()


def run_login(args: argparse.Namespace) -> int:
    environ = dict(os.environ)
    debug = args.debug or environ.get(EnvVars.SYSTEM_DEBUG, "").lower() == "true"
    _configure_logging(debug)

    logger.info("[CLI] Starting authentication")
    try:
        cfg = AuthConfig.from_cli_args(args, environ)
        cfg.log_summary(args.url)
        authenticator = MsAuthenticator(cfg)
        path = asyncio.run(authenticator.authenticate(args.url))
    except (MsAuthError, PlaywrightError) as exc:
        print(f"❌ Authentication failed: {exc}", file=sys.stderr)
        if debug:
            logger.exception("[CLI] Authentication error")
        return 1

    print("✅ Authentication successful!")
    print(f"📁 Auth state saved to: {path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'login':
        return run_login(args)
    if args.command == 'env-help':
        print_env_help()
        return 0
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
