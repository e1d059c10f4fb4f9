#!/usr/bin/env python3
"""
keygen.py - Generate a Fernet key for encrypting local session state.

Usage:
    python tools/keygen.py --out STATE.key

Note: The client can also derive the key from a password
      (exam-session --storage-password) instead of using a key file.
"""

import argparse
import sys
from cryptography.fernet import Fernet


def generate_key(output_file: str) -> None:
    """Generate a new Fernet key and save it to file."""
    try:
        key = Fernet.generate_key()

        with open(output_file, 'wb') as f:
            f.write(key)

        print("[OK] Success: State encryption key generated")
        print(f"  Output: {output_file}")
        print("\n[!] SECURITY: Keep the key on the exam machine only. Never commit to version control.")
        print("\n[i] Alternative: Use --storage-password with exam-session")
        print("    to encrypt local state with a password instead of a key file.")

    except OSError as e:
        print(f"[ERROR] Error generating key: {e}", file=sys.stderr)
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Generate a new Fernet encryption key for local session state.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python tools/keygen.py --out STATE.key
  python tools/verify_seal.py --state-dir .exam_state --exam 42 --key-file STATE.key
        """
    )
    parser.add_argument(
        "--out",
        required=True,
        help="Output file path for the key (e.g., STATE.key)"
    )

    args = parser.parse_args()
    generate_key(args.out)


if __name__ == "__main__":
    main()
