"""
vendor_marketplace/cli.py

コマンドラインインターフェース

    vendor-marketplace serve [--port PORT] [--config FILE]
    vendor-marketplace setup-vendor [--url URL] [--network NAME]
    vendor-marketplace init-keys [--config FILE]
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from vendor_marketplace.common.config import MarketplaceSettings


def _load_settings(args) -> MarketplaceSettings:
    overrides = {}
    if getattr(args, "port", None):
        overrides["port"] = args.port
    if getattr(args, "config", None):
        settings = MarketplaceSettings.from_file(args.config)
        return settings.model_copy(update=overrides) if overrides else settings
    return MarketplaceSettings.from_env(**overrides)


def cmd_serve(args) -> int:
    from vendor_marketplace.services.marketplace.main import run

    run(_load_settings(args))
    return 0


def cmd_setup_vendor(args) -> int:
    from vendor_marketplace.scripts.vendor_setup import VendorSetupError, vendor_setup

    try:
        exported = asyncio.run(vendor_setup(url=args.url, network=args.network))
    except VendorSetupError as e:
        print("\n========== ERROR ==========")
        print(f"Vendor registration failed: {e}")
        print("========== ERROR ==========\n")
        return 1

    print("\n========= SUCCESS ==========")
    print("Dumping Full DID Export\n")
    print(json.dumps(exported, indent=2, ensure_ascii=False))
    return 0


def cmd_init_keys(args) -> int:
    from vendor_marketplace.scripts.init_keys import init_keys

    asyncio.run(init_keys(_load_settings(args)))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vendor-marketplace",
        description="Vendor Marketplace - trust handshake, profiles and PoPR issuance"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Start the marketplace HTTP server")
    serve.add_argument("-p", "--port", type=int, help="Port to listen on (default: $PORT or 8000)")
    serve.add_argument("-c", "--config", help="JSON configuration file")
    serve.set_defaults(func=cmd_serve)

    setup = subparsers.add_parser("setup-vendor", help="Create a vendor identity and register it")
    setup.add_argument("--url", default="http://localhost:8000", help="Marketplace URL")
    setup.add_argument("--network", help="Expected marketplace network")
    setup.set_defaults(func=cmd_setup_vendor)

    keys = subparsers.add_parser("init-keys", help="Generate the marketplace key pair")
    keys.add_argument("-c", "--config", help="JSON configuration file")
    keys.set_defaults(func=cmd_init_keys)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
