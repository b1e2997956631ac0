#!/usr/bin/env python3
"""
AuditChain Bundle Verifier

A standalone tool to verify export bundles independently.
No server connection required - verification is cryptographic.

Usage:
    python verify.py bundle.json
    python verify.py bundle.json --verbose
    python verify.py bundle.json --json
    python verify.py bundle.json --public-key <base64 Ed25519 key>

Without --public-key the key embedded in the bundle is used: that proves
the bundle was not altered after signing, not who signed it.

Exit codes:
    0 - VERIFIED: All checks passed
    1 - TAMPERED: Hash, checksum or signature mismatch
    3 - INVALID_FORMAT: Bundle structure invalid
"""

import argparse
import json
import sys
from enum import Enum
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from auditchain.core.bundler import BundleFormatError, BundleVerification, verify_bundle  # noqa: E402


class Outcome(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INVALID_FORMAT = "INVALID_FORMAT"


EXIT_CODES = {
    Outcome.VERIFIED: 0,
    Outcome.TAMPERED: 1,
    Outcome.INVALID_FORMAT: 3,
}


# ============================================================
# CLI
# ============================================================

def print_report(report: BundleVerification, verbose: bool = False, json_output: bool = False) -> Outcome:
    """Print verification report and return the outcome."""
    outcome = Outcome.VERIFIED if report.is_valid else Outcome.TAMPERED

    if json_output:
        output = {
            "result": outcome.value,
            "chain_id": report.chain_id,
            "entry_count": report.entry_count,
            "checksum_valid": report.checksum_valid,
            "signature_valid": report.signature_valid,
            "attestation_reproduced": report.attestation_reproduced,
            "trusted_key": report.trusted_key,
            "problems": report.problems,
        }
        if verbose and report.replay is not None:
            output["replay"] = report.replay.model_dump(mode="json")
        print(json.dumps(output, indent=2))
        return outcome

    print("\n" + "=" * 60)
    if outcome == Outcome.VERIFIED:
        print("  [VERIFIED] - All checks passed")
    else:
        print("  [TAMPERED] - Hash, checksum or signature mismatch detected")
    print("=" * 60)

    print(f"\nChain:    {report.chain_id}")
    print(f"Entries:  {report.entry_count}")

    print("\nChecks:")
    print(f"  {'+' if report.checksum_valid else '-'} checksum")
    print(f"  {'+' if report.signature_valid else '-'} signature"
          f" ({'trusted key' if report.trusted_key else 'embedded key'})")
    print(f"  {'+' if report.attestation_reproduced else '-'} attestation reproduced")

    if verbose and report.replay is not None:
        print(f"\nReplay: {report.replay.total_entries} entries, "
              f"{report.replay.verified_entries} verified")
        for defect in report.replay.errors:
            where = "" if defect.sequence is None else f" at {defect.sequence}"
            print(f"  {defect.kind.value}{where}: {defect.message}")

    if report.problems:
        print("\nProblems:")
        for problem in report.problems:
            print(f"  - {problem}")

    if not report.trusted_key:
        print("\n  ! Signed with the embedded key; pass --public-key to check origin")

    print()
    return outcome


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify an AuditChain export bundle",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 3=INVALID_FORMAT"
    )
    parser.add_argument(
        "bundle",
        type=str,
        help="Path to the bundle JSON file"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show per-entry defects from the replay"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON"
    )
    parser.add_argument(
        "--public-key",
        help="Trusted base64 Ed25519 public key of the exporter"
    )

    args = parser.parse_args(argv)

    # Load bundle
    bundle_path = Path(args.bundle)
    if not bundle_path.exists():
        print(f"ERROR: File not found: {bundle_path}")
        return EXIT_CODES[Outcome.INVALID_FORMAT]

    try:
        with open(bundle_path, "r", encoding="utf-8") as f:
            bundle = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        return EXIT_CODES[Outcome.INVALID_FORMAT]
    except OSError as e:
        print(f"ERROR: Failed to read file: {e}")
        return EXIT_CODES[Outcome.INVALID_FORMAT]

    # Verify
    try:
        report = verify_bundle(bundle, trusted_public_key=args.public_key)
    except BundleFormatError as e:
        print(f"ERROR: {e}")
        return EXIT_CODES[Outcome.INVALID_FORMAT]

    outcome = print_report(report, verbose=args.verbose, json_output=args.json)
    return EXIT_CODES[outcome]


if __name__ == "__main__":
    sys.exit(main())
