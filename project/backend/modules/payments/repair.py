"""
Repair job for orders stuck in `authorized` without credits.
"""

from typing import Dict

from shared.errors import AlreadyCreditedError
from shared.logging import get_logger
from shared.store import Store
from modules.credit_ledger import CreditLedger

logger = get_logger("payments.repair")


async def process_authorized_orders(store: Store, ledger: CreditLedger) -> Dict[str, int]:
    """
    Credit every authorized, uncredited order through the guarded ledger path.

    Returns:
        {"credited": n, "already_processed": n}
    """
    async with store.session() as s:
        orders = await s.list_payment_orders("authorized", uncredited_only=True)

    credited = 0
    already = 0
    for order in orders:
        try:
            await ledger.credit_payment_order(order.id, note="Credited by authorized-order repair")
            credited += 1
        except AlreadyCreditedError:
            already += 1
    logger.info(
        "Authorized order repair finished",
        extra={"found": len(orders), "credited": credited, "already_processed": already}
    )
    return {"credited": credited, "already_processed": already}
