"""
Shiprocket Fulfillment CLI

Usage:
    # Fulfill one order (cheapest courier)
    shiprocket-fulfill fulfill 6f1c...e2

    # Fulfill with a specific courier
    shiprocket-fulfill fulfill 6f1c...e2 --courier-id 24

    # Bulk fulfillment (sequential, paced)
    shiprocket-fulfill batch ORDER_ID [ORDER_ID ...]

    # Show courier quotes without creating anything
    shiprocket-fulfill quotes 6f1c...e2

    # Track an order's shipment
    shiprocket-fulfill track 6f1c...e2

Environment:
    DATABASE_URL - Storefront database
    SHIPROCKET_EMAIL / SHIPROCKET_PASSWORD - Shiprocket API user
"""

import argparse
import asyncio
import logging
import sys

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.database import get_db_session
from shiprocket_fulfillment.core.exceptions import FulfillmentBaseError
from shiprocket_fulfillment.services.batch_fulfillment import BatchResult
from shiprocket_fulfillment.services.fulfillment import build_tracking_url
from shiprocket_fulfillment.services.shipping_service import ShippingService


# =============================================================================
# COMMANDS
# =============================================================================


async def cmd_fulfill(service: ShippingService, args) -> int:
    result = await service.fulfill_order(args.order_id, courier_company_id=args.courier_id)

    print(f"\n{result.message}")
    print(f"  State: {result.state.value}")
    print(f"  Tracking: {result.tracking_number}")
    if result.provider_shipment_id:
        print(f"  Shiprocket shipment: {result.provider_shipment_id}")
    url = build_tracking_url(result.tracking_number)
    if url:
        print(f"  Track: {url}")
    for warning in result.warnings:
        print(f"  Warning [{warning.code}]: {warning.message}")
    return 0


def _print_progress(result: BatchResult) -> None:
    entry = result.entries[-1]
    mark = "OK " if entry.success else "ERR"
    print(f"  [{result.completed}/{result.total}] {mark} {entry.order_label}: {entry.message}")


async def cmd_batch(service: ShippingService, args) -> int:
    print(f"\nFulfilling {len(args.order_ids)} orders...")
    result = await service.fulfill_batch(args.order_ids, courier_override=args.courier_id, on_progress=_print_progress)

    print("\nResults:")
    print(f"  Eligible: {result.total}")
    print(f"  Succeeded: {result.succeeded}")
    print(f"  Failed: {result.failed}")
    return 1 if result.failed else 0


async def cmd_quotes(service: ShippingService, args) -> int:
    options = await service.get_courier_quotes(args.order_id)
    if not options:
        print("\nNo serviceable couriers")
        return 1

    print(f"\n{'ID':>6}  {'Courier':<32} {'Rate':>10}  ETA")
    for option in options:
        eta = f"{option.estimated_delivery_days} days" if option.estimated_delivery_days else "-"
        cod = " (COD)" if option.cod_available else ""
        print(f"{option.courier_company_id:>6}  {option.courier_name:<32} {option.rate:>10.2f}  {eta}{cod}")
    return 0


async def cmd_track(service: ShippingService, args) -> int:
    tracking = await service.get_tracking(args.order_id)

    print(f"\nAWB: {tracking.awb_code or '-'}")
    print(f"  Courier: {tracking.courier_name or '-'}")
    print(f"  Status: {tracking.current_status or '-'}")
    for event in tracking.events[:10]:
        print(f"  {event.date or '':<20} {event.status:<12} {event.activity} {event.location or ''}")
    return 0


async def run(args) -> int:
    async with get_db_session() as db:
        service = ShippingService(db)
        try:
            return await args.func(service, args)
        except FulfillmentBaseError as e:
            print(f"Failed [{e.code}]: {e.message}")
            return 1
        finally:
            await service.close()


# =============================================================================
# MAIN
# =============================================================================


def main():
    parser = argparse.ArgumentParser(
        description="Shiprocket order fulfillment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s fulfill ORDER_ID                  # Cheapest serviceable courier
  %(prog)s fulfill ORDER_ID --courier-id 24  # Specific courier
  %(prog)s batch ID1 ID2 ID3                 # Sequential bulk fulfillment
  %(prog)s quotes ORDER_ID                   # Courier rates
  %(prog)s track ORDER_ID                    # Shipment tracking
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    fulfill_parser = subparsers.add_parser("fulfill", help="Create a shipment for one order")
    fulfill_parser.add_argument("order_id", help="Order id")
    fulfill_parser.add_argument("--courier-id", type=int, default=None, help="Courier company id override")
    fulfill_parser.set_defaults(func=cmd_fulfill)

    batch_parser = subparsers.add_parser("batch", help="Create shipments for several orders")
    batch_parser.add_argument("order_ids", nargs="+", help="Order ids")
    batch_parser.add_argument("--courier-id", type=int, default=None, help="Courier company id for every order")
    batch_parser.set_defaults(func=cmd_batch)

    quotes_parser = subparsers.add_parser("quotes", help="Show courier quotes for an order")
    quotes_parser.add_argument("order_id", help="Order id")
    quotes_parser.set_defaults(func=cmd_quotes)

    track_parser = subparsers.add_parser("track", help="Track an order's shipment")
    track_parser.add_argument("order_id", help="Order id")
    track_parser.set_defaults(func=cmd_track)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
