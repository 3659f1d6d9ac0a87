#!/usr/bin/env python3
"""Bootstrap a staff account with a PIN and, optionally, a pre-trusted device.

Usage:
    # Generate a PIN for a new line cook:
    python scripts/bootstrap_staff.py --identifier cook-17 --restaurant store-042

    # Supply the PIN and trust the tablet it will sign in from:
    STAFF_PIN=7392 python scripts/bootstrap_staff.py --identifier mgr-3 --role manager \\
        --restaurant store-042 --device-fingerprint <sha256 hex>

Environment Variables:
    STAFF_PIN: PIN to assign (generated when omitted)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_staff(
    identifier: str,
    *,
    role: str,
    restaurant_id: str,
    display_name: str | None,
    pin: str | None,
    device_fingerprint: str | None,
    dry_run: bool = False,
) -> dict:
    """Create the account (or reuse it), assign the PIN and trust the device.

    Returns:
        dict with user_id, status and, when generated, the new PIN
    """
    # Config is read on first runtime access, after env defaults are set
    from pinguard.service.devices import describe_user_agent
    from pinguard.service.runtime import get_runtime
    from pinguard.storage.models import DeviceRecord, DeviceTrust, new_id

    runtime = get_runtime()
    existing = runtime.store.get_user_by_identifier(identifier)
    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} {role} account {identifier} at {restaurant_id}")
        return {"user_id": existing.id if existing else None, "status": "dry_run"}

    generated = pin is None
    if generated:
        pin = runtime.pins.generate_secure_pin()

    if existing:
        user = existing
        status = "pin_reset"
    else:
        user = runtime.store.create_user(
            identifier, display_name, role=role, restaurant_id=restaurant_id
        )
        status = "created"
    await runtime.auth.set_pin(user.id, pin, actor_id="bootstrap")

    device_id = None
    if device_fingerprint:
        device = runtime.store.get_device_by_fingerprint(user.id, device_fingerprint)
        if device is None:
            name, device_type = describe_user_agent("bootstrap tablet")
            device = runtime.store.save_device(
                DeviceRecord(
                    id=new_id(),
                    user_id=user.id,
                    fingerprint=device_fingerprint,
                    trust_state=DeviceTrust.PENDING,
                    name=name,
                    device_type=device_type,
                )
            )
        device = await runtime.devices.trust_device(device.id, "bootstrap")
        device_id = device.id

    await runtime.audit.flush()
    return {
        "user_id": user.id,
        "identifier": user.identifier,
        "status": status,
        "device_id": device_id,
        "pin": pin if generated else None,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a PinGuard staff account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--identifier", required=True, help="Staff identifier (employee number)")
    parser.add_argument("--restaurant", required=True, help="Restaurant id the account belongs to")
    parser.add_argument(
        "--role", default="staff", choices=["staff", "manager", "admin"], help="Account role"
    )
    parser.add_argument("--display-name", default=None)
    parser.add_argument(
        "--pin", default=os.environ.get("STAFF_PIN"), help="PIN to assign (or set STAFF_PIN)"
    )
    parser.add_argument("--device-fingerprint", default=None, help="Device to pre-trust")
    parser.add_argument(
        "--dry-run", action="store_true", help="Show what would be done without making changes"
    )
    args = parser.parse_args()

    if args.pin is not None and not (len(args.pin) == 4 and args.pin.isdigit()):
        print("Error: PIN must be exactly 4 digits")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("TEST_MODE", "true")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from pinguard.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_staff(
                args.identifier,
                role=args.role,
                restaurant_id=args.restaurant,
                display_name=args.display_name,
                pin=args.pin,
                device_fingerprint=args.device_fingerprint,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for hint in exc.detail.get("errors", []):
            print(f"  - {hint}")
        sys.exit(1)

    if result["status"] == "dry_run":
        return
    print(f"\nAccount {result['identifier']} {result['status'].replace('_', ' ')}")
    print(f"  User ID: {result['user_id']}")
    if result["device_id"]:
        print(f"  Trusted device: {result['device_id']}")
    if result["pin"]:
        print(f"  Generated PIN: {result['pin']} (hand over in person; it is not stored in clear)")


if __name__ == "__main__":
    main()
