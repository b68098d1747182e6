#!/usr/bin/env python3
"""Generate mixer key material.

Usage:
    python scripts/generate_key.py              # New MIXER_ENCRYPTION_KEY
    python scripts/generate_key.py --sponsor    # New fee sponsor keypair, encrypted
                                                # under the configured MIXER_ENCRYPTION_KEY
"""

import argparse
import sys

from dotenv import load_dotenv
load_dotenv()

from solders.keypair import Keypair

from mixerex.config import get_settings
from mixerex.crypto import generate_master_key, get_key_vault
from mixerex.errors import ConfigurationError


def generate_sponsor() -> int:
    try:
        vault = get_key_vault()
    except ConfigurationError as e:
        print(f"Error: {e.message}")
        return 1

    keypair = Keypair()
    encrypted = vault.encrypt(bytes(keypair))
    print(f"Sponsor address (fund with SOL): {keypair.pubkey()}")
    print(f"FEE_PAYER_SECRET={encrypted}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate mixer key material")
    parser.add_argument("--sponsor", action="store_true",
                        help="Generate an encrypted fee sponsor keypair")
    args = parser.parse_args()

    if args.sponsor:
        return generate_sponsor()

    if get_settings().mixer_encryption_key:
        print("Note: MIXER_ENCRYPTION_KEY is already set. To rotate, move the old key")
        print("into MIXER_PREVIOUS_KEYS before replacing it.")
    print(f"MIXER_ENCRYPTION_KEY={generate_master_key()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
