#!/usr/bin/env python3
"""Execute a due mixer payout now instead of waiting for the worker tick.

Never runs a payout before its scheduled time or inside its retry backoff;
--reset returns a flagged payout to retries and makes it due immediately.

Usage:
    python scripts/execute_payout.py <order_id> [--reset]
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv
load_dotenv()

from mixerex.chain.factory import close_ledger
from mixerex.errors import MixerError
from mixerex.ledger.database import close_db, init_db
from mixerex.services.registry import get_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


async def execute(order_id: str, reset: bool) -> int:
    await init_db()

    try:
        services = get_services()
        order = await services.orders.get_order(order_id)
        print(f"Order {order.order_id}: {order.status}")
        print(f"  Deposit:   {order.deposit_address} ({order.deposited_amount})")
        print(f"  Recipient: {order.recipient_address}")
        print(f"  Scheduled: {order.payout_scheduled_at}")
        if order.payout_last_error:
            print(f"  Last error: {order.payout_last_error}")

        if reset and order.needs_attention:
            await services.executor.retry_failed_payout(order_id)
            print("Failed-payout flag cleared")

        result = await services.executor.execute_payout(order_id)
    except MixerError as e:
        print(f"Error: {e.message}")
        return 1
    finally:
        await close_ledger()
        await close_db()

    if result.success:
        print(f"Payout completed: {result.signature}")
        return 0
    print(f"Payout not completed: {result.error} (attempts: {result.attempts})")
    return 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Execute a due mixer payout now")
    parser.add_argument("order_id", help="Order id, e.g. MIX-1700000000000-ABCD1234")
    parser.add_argument("--reset", action="store_true",
                        help="Clear a failed-payout flag first")
    args = parser.parse_args()

    return asyncio.run(execute(args.order_id, args.reset))


if __name__ == "__main__":
    sys.exit(main())
