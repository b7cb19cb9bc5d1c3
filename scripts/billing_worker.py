from __future__ import annotations

import asyncio

from propledger.core.logging import configure_logging
from propledger.workers.billing_worker import run_billing_worker


async def _main() -> None:
    # Boot one stateless worker; any number can run against the same database.
    configure_logging()
    await run_billing_worker()


if __name__ == "__main__":
    asyncio.run(_main())
