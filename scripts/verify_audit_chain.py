from __future__ import annotations

import argparse
import asyncio
import sys

from propledger.core.config import get_settings
from propledger.core.logging import configure_logging
from propledger.persistence.db import build_engine, build_sessionmaker
from propledger.services.audit_chain import verify_chain


async def _verify(organization_ids: list[str]) -> int:
    # Replay each organization's chain read-only and report the first break.
    engine = build_engine(get_settings())
    sessionmaker = build_sessionmaker(engine)
    broken = 0
    try:
        async with sessionmaker() as session:
            for organization_id in organization_ids:
                result = await verify_chain(session, organization_id)
                if result.valid:
                    print(f"organization_id={organization_id} valid=true entries={result.total_entries}")
                    continue
                broken += 1
                print(
                    f"organization_id={organization_id} valid=false entries={result.total_entries} "
                    f"broken_at={result.broken_at} entry_id={result.entry_id} reason={result.reason!r}"
                )
    finally:
        await engine.dispose()
    return 1 if broken else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Verify financial audit hash chains")
    parser.add_argument("organization_ids", nargs="+", help="Organization ids to verify")
    args = parser.parse_args()
    configure_logging()
    sys.exit(asyncio.run(_verify(args.organization_ids)))


if __name__ == "__main__":
    main()
