#!/usr/bin/env python3
"""
Premium Repair Script

Re-derives stored premium entitlements from the RevenueCat REST API for a
list of app user ids. Users that RevenueCat reports as missing or
non-premium are skipped unless --allow-downgrade is passed.

Usage:
    python -m app.scripts.repair_premium_status --uids=uid1,uid2
    python -m app.scripts.repair_premium_status --uids-file=uids.txt --allow-downgrade
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, TextIO

from app.config import settings
from app.db.session import close_db, get_session_factory
from app.services.entitlement_store import SqlAlchemyEntitlementStore
from app.services.reconciler import EntitlementReconciler, RepairStatus
from app.services.revenuecat import RevenueCatClient
from app.services.subscriber_state import resolve_premium_state
from app.utils.helpers import now_ms, utc_now

logger = logging.getLogger(__name__)


@dataclass
class RepairSummary:
    repaired: int = 0
    skipped: int = 0
    failed: int = 0


def parse_uids(direct: Optional[str], uids_file: Optional[str]) -> list[str]:
    """Comma-separated ids plus whitespace-separated ids from a file, deduplicated in order."""
    uids: list[str] = []
    if direct:
        uids.extend(uid.strip() for uid in direct.split(","))
    if uids_file and uids_file.strip():
        uids.extend(Path(uids_file.strip()).read_text(encoding="utf-8").split())
    return list(dict.fromkeys(uid for uid in uids if uid))


def _uid_suffix(app_user_id: str) -> str:
    return app_user_id[-6:]


def _emit(out: TextIO, **fields) -> None:
    print(json.dumps({"timestamp": utc_now().isoformat(), **fields}), file=out)


async def repair_users(
    uids: Iterable[str],
    client: RevenueCatClient,
    reconciler: EntitlementReconciler,
    allow_downgrade: bool = False,
    out: TextIO = sys.stdout,
) -> RepairSummary:
    """Repair each user in turn; one failure never stops the run."""
    summary = RepairSummary()

    for app_user_id in uids:
        suffix = _uid_suffix(app_user_id)
        try:
            lookup = await client.get_subscriber(app_user_id)

            if lookup.status_code == 404 or (lookup.status_code < 400 and lookup.subscriber is None):
                state = None
            elif lookup.status_code >= 400:
                summary.failed += 1
                _emit(out, action="repair", status="failed", uidSuffix=suffix,
                      reason=f"revenuecat status {lookup.status_code}")
                continue
            else:
                state = resolve_premium_state(lookup.subscriber, now_ms(), reconciler.catalog)

            result = await reconciler.repair_from_subscriber(app_user_id, state, allow_downgrade)
        except Exception as e:
            summary.failed += 1
            logger.exception("Repair failed for user ...%s", suffix)
            _emit(out, action="repair", status="failed", uidSuffix=suffix, reason=str(e))
            continue

        if result.status is RepairStatus.SKIPPED:
            summary.skipped += 1
            _emit(out, action="repair", status="skipped", uidSuffix=suffix,
                  reason=f"{result.reason}; pass --allow-downgrade to apply")
            continue

        summary.repaired += 1
        _emit(
            out,
            action="repair",
            status="repaired",
            uidSuffix=suffix,
            beforeIsPremium=result.before_is_premium,
            afterIsPremium=result.after_is_premium,
            afterEntitlementType=result.entitlement_type.value if result.entitlement_type else None,
        )

    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Repair premium status from RevenueCat")
    parser.add_argument("--uids", type=str, help="Comma separated app user ids")
    parser.add_argument("--uids-file", type=str, help="File with whitespace separated app user ids")
    parser.add_argument(
        "--allow-downgrade",
        action="store_true",
        help="Apply non-premium results (missing or expired subscribers)",
    )
    return parser


async def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        uids = parse_uids(args.uids, args.uids_file)
        if not uids:
            raise ValueError("Missing user ids. Pass --uids=<uid1,uid2> or --uids-file=<path>.")
        if not settings.REVENUECAT_API_KEY:
            raise ValueError("Missing REVENUECAT_API_KEY environment variable.")
        reconciler = EntitlementReconciler(SqlAlchemyEntitlementStore(get_session_factory()))
    except (OSError, ValueError) as e:
        print(f"Repair script failed: {e}", file=sys.stderr)
        return 1

    try:
        summary = await repair_users(uids, RevenueCatClient(), reconciler, args.allow_downgrade)
    finally:
        await close_db()

    print("Repair complete.")
    print(f"Repaired: {summary.repaired}")
    print(f"Skipped: {summary.skipped}")
    print(f"Failed: {summary.failed}")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(main()))
