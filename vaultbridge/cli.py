"""CLI tool for operator tasks.

Usage:
    python -m vaultbridge.cli create-admin
    python -m vaultbridge.cli process-once [start]
    python -m vaultbridge.cli arm
    python -m vaultbridge.cli reconcile
"""

import asyncio
import getpass
import sys

from sqlmodel import Session, select

from vaultbridge.database import create_db_and_tables, engine
from vaultbridge.models.user import User
from vaultbridge.services.auth import generate_totp_secret, get_totp_uri, hash_password
from vaultbridge.utils.logging import setup_logging


def create_admin():
    """Create an operator account with TOTP setup."""
    create_db_and_tables()

    username = input("Username: ").strip()
    if not username:
        print("Username cannot be empty.")
        sys.exit(1)

    with Session(engine) as session:
        if session.exec(select(User).where(User.username == username)).first():
            print(f"User '{username}' already exists.")
            sys.exit(1)

    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Confirm password: "):
        print("Passwords do not match.")
        sys.exit(1)

    totp_secret = generate_totp_secret()
    totp_uri = get_totp_uri(totp_secret, username)

    with Session(engine) as session:
        session.add(User(
            username=username,
            hashed_password=hash_password(password),
            totp_secret=totp_secret,
        ))
        session.commit()

    print(f"\nOperator '{username}' created.")
    print(f"\nTOTP Secret: {totp_secret}")
    print(f"TOTP URI: {totp_uri}")

    try:
        import qrcode
        qr = qrcode.QRCode(box_size=1, border=1)
        qr.add_data(totp_uri)
        qr.make(fit=True)
        print("\nScan the QR code below with your authenticator app:")
        qr.print_ascii(invert=True)
    except ImportError:
        print("(Install the 'qr' extra to display the QR code in the terminal)")


async def _process_once(start: int):
    from vaultbridge.engine.scheduler import load_state
    from vaultbridge.engine.worker import get_worker, shutdown_worker

    worker = get_worker()
    worker.ledger.ensure_native_asset()
    try:
        batch = await worker.process_requests(start=start, count=load_state(engine).batch_size)
    finally:
        await shutdown_worker()
    s = batch.summary()
    print(
        f"Processed {s['total']} request(s): {s['succeeded']} succeeded, {s['failed']} failed, "
        f"{s['skipped']} skipped, "
        f"{s['ledger_update_failures']} ledger update failure(s)"
    )
    for outcome in batch.outcomes:
        print(f"  #{outcome.request_id} {outcome.kind}: {'ok' if outcome.success else 'FAILED'} {outcome.message}")


def process_once(start: int = 0):
    """Run the worker over one page of the queue without scheduling anything."""
    create_db_and_tables()
    asyncio.run(_process_once(start))


def arm():
    """Clear the paused and halted flags so the loop arms on the next service start."""
    from vaultbridge.engine.scheduler import load_state, update_state

    create_db_and_tables()
    state = load_state(engine)
    update_state(engine, paused=False, halted_reason=None)
    print(f"Loop cleared (was paused={state.paused}, halted={state.halted_reason}).")
    print("It arms when the service starts, or via POST /api/system/arm on a running service.")


async def _reconcile():
    from vaultbridge.engine.reconcile import run_reconcile
    from vaultbridge.engine.worker import shutdown_worker

    try:
        report = await run_reconcile()
    finally:
        await shutdown_worker()
    if report.error:
        print(f"Reconcile aborted: {report.error}")
        sys.exit(1)
    print(f"added={report.added} removed={report.removed} cleared={report.cleared_flags}")
    if report.unresolved:
        print(f"Needs review: divergent={report.divergent} unflagged={report.unflagged} orphaned={report.orphaned}")


def reconcile():
    create_db_and_tables()
    asyncio.run(_reconcile())


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m vaultbridge.cli <command>")
        print("Commands: create-admin, process-once [start], arm, reconcile")
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]
    if command == "create-admin":
        create_admin()
    elif command == "process-once":
        process_once(int(sys.argv[2]) if len(sys.argv) > 2 else 0)
    elif command == "arm":
        arm()
    elif command == "reconcile":
        reconcile()
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
