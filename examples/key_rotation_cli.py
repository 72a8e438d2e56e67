from __future__ import annotations

import argparse
import json
import secrets
import sys
from pathlib import Path
from typing import Any

if __package__ in (None, ""):
    repo_src = Path(__file__).resolve().parents[1] / "src"
    if str(repo_src) not in sys.path:
        sys.path.insert(0, str(repo_src))

try:
    from atm_keys import (
        HsmClient,
        HsmConfig,
        KeyManagementError,
        KeyManagerConfig,
        KeyRecord,
        KeyType,
        RotationCoordinator,
        SqliteKeyStore,
        configure_logging,
        key_checksum,
    )
except ModuleNotFoundError as exc:
    if exc.name in ("httpx", "cryptography"):
        raise SystemExit(
            f"Missing dependency: {exc.name}\n"
            "Install it with:\n"
            "  python3 -m pip install -e ."
        ) from exc
    raise

HELP_EPILOG = """Examples:
  # Inject a first master key (hex) for a terminal's TSK slot
  python3 examples/key_rotation_cli.py provision TRM-ISS001-ATM-001 TSK --bank ISS001 --key <64 hex>

  # Rotate through the HSM and activate immediately
  python3 examples/key_rotation_cli.py rotate TRM-ISS001-ATM-001 TSK

  # Server-mediated: stage a PENDING key, then settle it
  python3 examples/key_rotation_cli.py distribute TRM-ISS001-ATM-001 TPK
  python3 examples/key_rotation_cli.py complete TRM-ISS001-ATM-001 TPK

  # Inspect key versions (never prints key material)
  python3 examples/key_rotation_cli.py show TRM-ISS001-ATM-001

Environment:
  ATM_KEYS_HSM_URL       HSM base URL (required for rotate/distribute/complete)
  ATM_KEYS_STORE_PATH    SQLite key store path (default: data/atm-keys.db)
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage ATM terminal key versions against the HSM.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    parser.add_argument(
        "--store",
        default=None,
        help="SQLite key store path (overrides ATM_KEYS_STORE_PATH).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print results as JSON.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    provision = commands.add_parser("provision", help="Inject the first ACTIVE key for a slot.")
    _add_slot_arguments(provision)
    provision.add_argument("--bank", required=True, help="Bank context for key derivation.")
    provision.add_argument(
        "--key",
        default=None,
        help="32-byte master key as hex. A random key is generated when omitted.",
    )

    rotate = commands.add_parser("rotate", help="Rotate a key through the HSM and activate it.")
    _add_slot_arguments(rotate)
    rotate.add_argument("--grace-hours", type=int, default=None, help="Grace period to request.")
    rotate.add_argument("--description", default=None, help="Free text sent to the HSM.")

    distribute = commands.add_parser(
        "distribute", help="Obtain a new key and leave it PENDING for the terminal."
    )
    _add_slot_arguments(distribute)
    distribute.add_argument(
        "--grace-hours", type=int, default=None, help="Grace period to request."
    )

    complete = commands.add_parser("complete", help="Activate the PENDING key of a slot.")
    _add_slot_arguments(complete)
    complete.add_argument("--version", type=int, default=None, help="Expected PENDING version.")

    fail = commands.add_parser("fail", help="Discard the PENDING key of a slot.")
    _add_slot_arguments(fail)

    show = commands.add_parser("show", help="List key versions for a terminal.")
    show.add_argument("terminal_id")

    return parser.parse_args(argv)


def _add_slot_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("terminal_id")
    parser.add_argument("key_type", type=KeyType.parse, help="TPK, TSK or TMK.")


def _describe(record: KeyRecord) -> dict[str, Any]:
    return {
        "terminalId": record.terminal_id,
        "keyType": record.key_type.value,
        "version": record.version,
        "status": record.status.value,
        "bankContext": record.bank_context,
        "rotationId": record.rotation_id,
        "checksum": key_checksum(record.value),
        "effectiveFrom": record.effective_from.isoformat(),
        "effectiveUntil": record.effective_until.isoformat() if record.effective_until else None,
    }


def _print_records(records: list[KeyRecord], as_json: bool) -> None:
    if as_json:
        print(json.dumps([_describe(record) for record in records], indent=2))
        return
    if not records:
        print("No keys stored.")
        return
    for record in records:
        item = _describe(record)
        print(
            f"{item['keyType']} v{item['version']:<3} {item['status']:<8} "
            f"checksum={item['checksum']} rotation={item['rotationId'] or '-'} "
            f"from={item['effectiveFrom']}"
        )


def _run_with_hsm(args: argparse.Namespace, store: SqliteKeyStore) -> list[KeyRecord]:
    hsm_config = HsmConfig.from_env()
    manager_config = KeyManagerConfig.from_env()
    with HsmClient(hsm_config) as client:
        coordinator = RotationCoordinator.from_config(store, client, hsm_config, manager_config)
        if args.command == "rotate":
            state = coordinator.rotate(
                args.terminal_id,
                args.key_type,
                grace_period_hours=args.grace_hours,
                description=args.description,
            )
            print(f"Rotation {state.rotation_id} {state.status.value}")
            return [store.get_active(args.terminal_id, args.key_type)]
        if args.command == "distribute":
            delivery = coordinator.distribute(
                args.terminal_id, args.key_type, grace_period_hours=args.grace_hours
            )
            print(f"Rotation {delivery.rotation_id} staged as version {delivery.version}")
            print(f"Encrypted key for terminal: {delivery.encrypted_key}")
            print(f"Checksum: {delivery.checksum}")
            return store.get_valid_keys(args.terminal_id, args.key_type)
        return [coordinator.complete_distribution(args.terminal_id, args.key_type, args.version)]


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging()
        store_path = args.store or KeyManagerConfig.from_env().store_path
        store = SqliteKeyStore(store_path)
        try:
            if args.command == "provision":
                value = bytes.fromhex(args.key) if args.key else secrets.token_bytes(32)
                records = [store.provision(args.terminal_id, args.key_type, value, args.bank)]
            elif args.command == "fail":
                removed = store.remove_pending(args.terminal_id, args.key_type)
                print("Removed PENDING key." if removed else "No PENDING key to remove.")
                records = store.get_valid_keys(args.terminal_id, args.key_type)
            elif args.command == "show":
                records = store.list_terminal_keys(args.terminal_id)
            else:
                records = _run_with_hsm(args, store)
        finally:
            store.close()
        _print_records(records, args.json)
        return 0
    except (KeyManagementError, ValueError) as exc:
        print(f"Key management error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
