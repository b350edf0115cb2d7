#!/usr/bin/env python3
"""Generate a credential encryption key for fleetdeck."""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from common.credentials import CredentialVault
from control.config import DEFAULT_CONFIG_FILE, Config, ensure_config_dir


def main():
    parser = argparse.ArgumentParser(description="Generate a fleetdeck credential key")
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help=f"Config file to store the key in (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help="Write the key into the config file instead of only printing it",
    )
    parser.add_argument("-f", "--force", action="store_true", help="Replace an existing key")

    args = parser.parse_args()
    key = CredentialVault.generate_key()

    if not args.save:
        print(key)
        print()
        print("Export it as FLEETDECK_SECRET_KEY or set secret_key in the config file.")
        return 0

    config = Config.load(args.config)
    if config.secret_key and not args.force:
        print(f"Error: A secret key is already set in {args.config}")
        print("Use -f to replace it (stored credentials will no longer decrypt)")
        return 1

    ensure_config_dir()
    config.secret_key = key
    config.save(args.config)
    print(f"Saved new secret key to {args.config}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
