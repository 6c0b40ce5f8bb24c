#!/usr/bin/env python3
"""Operator checks against the security event log and session roles.

Usage:
    # Re-hash every stored event and list the ones that no longer match:
    REDIS_URL=redis://localhost:6379/0 python scripts/security_audit.py verify

    # Run anomaly detection over the last two hours:
    python scripts/security_audit.py anomalies --window 7200

    # Give a linked session a dashboard role:
    python scripts/security_audit.py grant-role --session-id <id> --role admin

Environment Variables:
    REDIS_URL: Redis connection string holding the trust state
    ENCRYPTION_KEY, ENCRYPTION_SALT, HASH_SALT: must match the running service
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def verify_log() -> int:
    from pulsegate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        tampered = await runtime.audit.verify_all()
    finally:
        await runtime.close()
    if tampered:
        print(f"Integrity check FAILED for {len(tampered)} event(s):")
        for event_id in tampered:
            print(f"  {event_id}")
        return 2
    print("All stored security events passed the integrity check.")
    return 0


async def scan_anomalies(window_seconds: int | None) -> int:
    from pulsegate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        anomalies = await runtime.audit.detect_anomalies(window_seconds)
    finally:
        await runtime.close()
    if not anomalies:
        print("No anomalies detected.")
        return 0
    for anomaly in anomalies:
        print(
            f"[{anomaly.severity.value}] {anomaly.type}: {anomaly.description} "
            f"({anomaly.event_count} events, subject {anomaly.subject})"
        )
    return 1


async def grant_role(session_id: str, role: str, dry_run: bool = False) -> int:
    from pulsegate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if role not in {definition.name for definition in runtime.rbac.roles()}:
            print(f"Error: unknown role {role!r}")
            return 1
        session = await runtime.sessions.get(session_id)
        if session is None or not session.verified:
            print(f"Error: no linked session {session_id}")
            return 1
        if dry_run:
            print(f"[DRY RUN] Would grant {role} to session {session_id}")
            return 0
        await runtime.sessions.update(session_id, metadata={**session.metadata, "role": role})
        print(f"Granted {role} to session {session_id} (account {session.account_id})")
        return 0
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Security log and role maintenance for Pulsegate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("verify", help="Check the integrity hash of every stored event")

    anomalies = commands.add_parser("anomalies", help="Run anomaly detection")
    anomalies.add_argument("--window", type=int, default=None, help="Window in seconds")

    grant = commands.add_parser("grant-role", help="Set the role of a linked session")
    grant.add_argument("--session-id", required=True)
    grant.add_argument("--role", required=True)
    grant.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    try:
        if args.command == "verify":
            code = asyncio.run(verify_log())
        elif args.command == "anomalies":
            code = asyncio.run(scan_anomalies(args.window))
        else:
            code = asyncio.run(grant_role(args.session_id, args.role, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
