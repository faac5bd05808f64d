from __future__ import annotations

import argparse
import asyncio
import sys

from hostplane.core.errors import (
    PermanentProviderError,
    ProviderAuthError,
    ProviderConfigError,
    TransientProviderError,
)
from hostplane.providers.base import CATALOG_KINDS
from hostplane.providers.factory import build_provider


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Read one catalog from a provider to confirm credentials and connectivity."
    )
    parser.add_argument("--provider", default="hetzner", help="Provider name")
    parser.add_argument("--kind", choices=CATALOG_KINDS, default="location", help="Catalog to list")
    return parser


def _format_error(exc: Exception) -> tuple[int, str]:
    # Map known provider failures to stable, actionable messages.
    if isinstance(exc, ProviderConfigError):
        return 2, f"PROVIDER_CONFIG_MISSING: {exc}"
    if isinstance(exc, ProviderAuthError):
        return 3, f"PROVIDER_AUTH_ERROR: {exc}"
    if isinstance(exc, TransientProviderError):
        return 4, f"PROVIDER_UNAVAILABLE: {exc}"
    if isinstance(exc, PermanentProviderError):
        return 5, f"PROVIDER_REJECTED: {exc}"
    return 1, f"UNKNOWN_ERROR: {exc}"


async def _run(args: argparse.Namespace) -> int:
    # Talk to the provider directly so the result cache cannot mask a broken token.
    provider = build_provider(args.provider)
    try:
        options = await provider.list_catalog(args.kind)
    finally:
        await provider.aclose()

    for option in options:
        description = option.description or ""
        print(f"- id={option.id} name={option.name} description=\"{description}\"")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface actionable errors
        code, message = _format_error(exc)
        print(message, file=sys.stderr)
        return code


if __name__ == "__main__":
    raise SystemExit(main())
