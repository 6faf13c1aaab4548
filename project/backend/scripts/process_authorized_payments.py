#!/usr/bin/env python3
"""
Credit payment orders stuck in `authorized` state.

Runs the same guarded credit path as the webhook, so orders that were
credited meanwhile are counted as already processed.
"""

import asyncio
import sys
from pathlib import Path

# Add backend to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from shared.config import settings
from shared.store import create_store
from modules.credit_ledger import CreditLedger
from modules.payments import process_authorized_orders


async def main():
    store = create_store(settings)
    await store.connect()
    try:
        ledger = CreditLedger.from_settings(store, settings)
        result = await process_authorized_orders(store, ledger)
    finally:
        await store.close()

    print(f"Credited: {result['credited']}")
    print(f"Already processed: {result['already_processed']}")


if __name__ == "__main__":
    asyncio.run(main())
