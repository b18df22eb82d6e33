#!/usr/bin/env python3
"""
Labeler Management CLI

Commands for operating a labeler:
- generate-key: Generate an Ed25519 signing keypair
- issue-token: Mint a bearer token for emitEvent
- init-db: Create the labels table in PostgreSQL
- backfill-signatures: Sign every stored label that has no signature
- export-labels: Export all labels to JSON
- verify-labels: Check the signatures in an exported file
- health-check: Check configuration and storage

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage generate-key
    python -m tools.manage issue-token --iss did:plc:moderator
    python -m tools.manage export-labels -o labels.json
    python -m tools.manage verify-labels labels.json --public-key <base64>
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

EXPORT_BATCH_SIZE = 1000


def cmd_generate_key(args):
    """Generate a new Ed25519 keypair."""
    from labeler.core import Ed25519Signer

    private_key, public_key = Ed25519Signer.generate_keypair()

    print("\n[OK] Signing keypair generated")
    print("\n  Public key (for verification):")
    print(f"  {public_key}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set this environment variable:")
    print(f"  LABELER_SIGNING_KEY={private_key}")


def cmd_issue_token(args):
    """Mint a bearer token for the shared-secret verifier."""
    from labeler.config import LabelerConfig
    from labeler.core import SharedSecretVerifier

    config = LabelerConfig.from_env()
    verifier = SharedSecretVerifier(config.auth_secret, max_age=config.auth_max_age)
    token = verifier.issue(
        iss=args.iss,
        aud=args.aud or config.did,
        lxm=None if args.any_method else args.lxm,
    )

    print(f"\nBearer token for {args.iss} (valid {config.auth_max_age}s):")
    print(token)


def cmd_init_db(args):
    """Create the labels table."""
    from labeler.db import LabelStoreDriver, get_labelstore_driver, open_label_store

    if get_labelstore_driver() == LabelStoreDriver.MEMORY:
        print("Error: no PostgreSQL database configured (set DATABASE_URL or DATABASE_HOST)")
        return 1

    async def run():
        # open_label_store() runs init_schema for PostgreSQL
        store = await open_label_store()
        try:
            return await store.max_id()
        finally:
            await store.close()

    head = asyncio.run(run())
    print(f"[OK] Schema ready (head id: {head})")


def cmd_backfill_signatures(args):
    """Sign every unsigned label in the store."""
    from labeler.config import LabelerConfig
    from labeler.core import SigningBridge, load_signer
    from labeler.db import open_label_store

    config = LabelerConfig.from_env()

    async def run():
        store = await open_label_store()
        try:
            bridge = SigningBridge(store, load_signer(config.signing_key, production=True))
            cursor = 0
            scanned = signed = 0
            while True:
                rows = await store.scan_from(cursor, args.batch_size)
                if not rows:
                    break
                for row in rows:
                    if row.sig is None:
                        await bridge.ensure_signed(row)
                        signed += 1
                scanned += len(rows)
                cursor = rows[-1].id
            return scanned, signed
        finally:
            await store.close()

    scanned, signed = asyncio.run(run())
    print(f"[OK] Scanned {scanned} labels, backfilled {signed} signatures")


def cmd_export_labels(args):
    """Export all labels to a JSON file."""
    from labeler.db import open_label_store

    async def run():
        store = await open_label_store()
        try:
            exported = []
            cursor = 0
            while True:
                rows = await store.scan_from(cursor, EXPORT_BATCH_SIZE)
                if not rows:
                    break
                for row in rows:
                    data = row.signed(row.sig).to_json() if row.sig is not None else row.signing_fields()
                    exported.append({"id": row.id, **data})
                cursor = rows[-1].id
            return exported
        finally:
            await store.close()

    print("Loading labels...")
    export_data = asyncio.run(run())
    print(f"Found {len(export_data)} labels")

    output_file = args.output or "labels_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(export_data)} labels to {output_file}")


def cmd_verify_labels(args):
    """Verify the signatures in an exported label file."""
    from labeler.core import Ed25519Signer, LabelEncoder
    from labeler.schemas import Label, bytes_from_json

    with open(args.file) as f:
        exported = json.load(f)

    verified = unsigned = 0
    failed = []
    for entry in exported:
        sig = entry.get("sig")
        if sig is None:
            unsigned += 1
            continue
        fields = {k: v for k, v in entry.items() if k not in ("id", "sig")}
        data = LabelEncoder.encode(Label(**fields))
        if Ed25519Signer.verify(data, bytes_from_json(sig), args.public_key):
            verified += 1
        else:
            failed.append(entry.get("id"))

    print(f"  Verified: {verified}")
    print(f"  Unsigned: {unsigned}")
    if failed:
        print(f"[FAIL] {len(failed)} signatures did not verify: ids {failed}")
        return 1
    print("[OK] All signatures verified")
    return 0


def cmd_health_check(args):
    """Run configuration and storage checks."""
    from labeler.db import DatabaseConfig, LabelStoreDriver, get_labelstore_driver, open_label_store

    driver = get_labelstore_driver()

    print("=== Labeler Health Check ===\n")

    print("Label store:")
    if driver == LabelStoreDriver.ASYNCPG:
        config = DatabaseConfig.from_env()
        print(f"  Type: PostgreSQL ({driver.value})")
        print(f"  Host: {config.host}:{config.port}")

        async def run():
            store = await open_label_store()
            try:
                return await store.max_id()
            finally:
                await store.close()

        try:
            head = asyncio.run(run())
            print("  Status: [OK] Connected")
            print(f"  Head id: {head}")
        except Exception as e:
            print(f"  Status: [FAIL] Failed - {e}")
            return 1
    else:
        print("  Type: In-Memory")
        print("  Status: [OK]")

    print("\nEnvironment:")
    print(f"  Labeler DID: {os.environ.get('LABELER_DID') or '[WARN] not set (development default)'}")

    if len(os.environ.get("LABELER_AUTH_SECRET", "")) >= 16:
        print("  Auth secret: [OK] Set")
    else:
        print("  Auth secret: [WARN] Using default (development)")

    if os.environ.get("LABELER_SIGNING_KEY", ""):
        print("  Signing key: [OK] Set")
    else:
        print("  Signing key: [WARN] Using ephemeral (development)")

    print("\n=== Health Check Complete ===")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Labeler Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # generate-key
    subparsers.add_parser(
        "generate-key",
        help="Generate an Ed25519 signing keypair"
    )

    # issue-token
    p_token = subparsers.add_parser(
        "issue-token",
        help="Mint a bearer token for emitEvent"
    )
    p_token.add_argument("--iss", required=True, help="Issuer DID (the caller)")
    p_token.add_argument("--aud", help="Audience DID (default: LABELER_DID)")
    p_token.add_argument(
        "--lxm",
        default="tools.ozone.moderation.emitEvent",
        help="Method the token is bound to",
    )
    p_token.add_argument("--any-method", action="store_true", help="Do not bind the token to a method")

    # init-db
    subparsers.add_parser(
        "init-db",
        help="Create the labels table in PostgreSQL"
    )

    # backfill-signatures
    p_backfill = subparsers.add_parser(
        "backfill-signatures",
        help="Sign every stored label that has no signature"
    )
    p_backfill.add_argument("--batch-size", type=int, default=500, help="Rows per scan")

    # export-labels
    p_export = subparsers.add_parser(
        "export-labels",
        help="Export all labels to JSON"
    )
    p_export.add_argument("--output", "-o", help="Output file (default: labels_export.json)")

    # verify-labels
    p_verify = subparsers.add_parser(
        "verify-labels",
        help="Verify signatures in an exported label file"
    )
    p_verify.add_argument("file", help="Exported JSON file")
    p_verify.add_argument("--public-key", required=True, help="Base64 Ed25519 public key")

    # health-check
    subparsers.add_parser(
        "health-check",
        help="Run configuration and storage checks"
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "generate-key": cmd_generate_key,
        "issue-token": cmd_issue_token,
        "init-db": cmd_init_db,
        "backfill-signatures": cmd_backfill_signatures,
        "export-labels": cmd_export_labels,
        "verify-labels": cmd_verify_labels,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
