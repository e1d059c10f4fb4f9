#!/usr/bin/env python3
"""
verify_seal.py - Verify sealed snapshots left in a local state directory.

Examples:
  # Plaintext state
  python tools/verify_seal.py --state-dir .exam_state --exam 42

  # Encrypted state (key file)
  python tools/verify_seal.py --state-dir .exam_state --exam 42 --key-file STATE.key

  # Encrypted state (password)
  python tools/verify_seal.py --state-dir .exam_state --exam 42 --password

  # A single exported snapshot document
  python tools/verify_seal.py --file seal_42_7.json
"""

import argparse
import getpass
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from examsession.errors import StorageError
from examsession.models import SealedSnapshot
from examsession.sealing import compute_integrity_hash
from examsession.storage import LocalStore


def _verify_document(label: str, document: dict, verbose: bool) -> bool:
    try:
        snapshot = SealedSnapshot.from_dict(document)
    except (KeyError, TypeError) as e:
        print(f"[ERROR] {label}: incomplete snapshot, missing {e}")
        return False

    expected = compute_integrity_hash(snapshot.hashed_fields())
    if expected != snapshot.integrity_hash:
        print(f"[ERROR] {label}: integrity hash mismatch")
        print(f"  Stored:   {snapshot.integrity_hash}")
        print(f"  Computed: {expected}")
        return False

    answered = sum(1 for entry in snapshot.responses.values()
                   if entry.get('selected_option_id') or entry.get('selected_option_ids') or entry.get('text_response'))
    print(f"[OK] {label}: hash verified")
    print(f"  Attempt: {snapshot.attempt_id}")
    print(f"  Reason: {snapshot.seal_reason}")
    print(f"  Sealed at: {snapshot.sealed_at}")
    print(f"  Time remaining at seal: {snapshot.time_remaining_at_seal:.0f}s")
    print(f"  Answers: {answered} ({len(snapshot.flagged)} flagged)")
    print(f"  Violations at seal: {snapshot.violation_count_at_seal}")
    if verbose:
        for qid in sorted(snapshot.responses):
            print(f"    {qid}: {snapshot.responses[qid]}")
    return True


def _open_store(state_dir: Path, key_file, use_password: bool) -> LocalStore:
    if use_password:
        return LocalStore.with_password(state_dir, getpass.getpass("Enter state password: "))
    if key_file:
        return LocalStore(state_dir, Path(key_file).read_bytes().strip())
    return LocalStore(state_dir)


def main():
    parser = argparse.ArgumentParser(description="Verify sealed snapshots (.json or .enc).")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--state-dir", help="Local state directory of the exam client")
    group.add_argument("--file", help="Path to a plaintext snapshot document (.json)")
    parser.add_argument("--exam", help="Exam id (required with --state-dir)")
    parser.add_argument("--key-file", help="Encryption key file (for key-file encrypted state)")
    parser.add_argument("--password", action="store_true", help="Use password to decrypt the state")
    parser.add_argument("--verbose", action="store_true", help="Show every sealed answer")
    args = parser.parse_args()

    try:
        if args.file:
            path = Path(args.file)
            ok = _verify_document(path.name, json.loads(path.read_bytes()), args.verbose)
        else:
            if not args.exam:
                parser.error("--exam is required with --state-dir")
            store = _open_store(Path(args.state_dir), args.key_file, args.password)
            seals = store.find_seals(args.exam)
            if not seals:
                print(f"[i] No sealed snapshots for exam {args.exam}")
                sys.exit(0)
            ok = all([_verify_document(f"attempt {attempt_id}", document, args.verbose)
                      for attempt_id, document in seals])
    except (OSError, ValueError, StorageError) as e:
        print(f"[ERROR] {e}")
        sys.exit(1)

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
