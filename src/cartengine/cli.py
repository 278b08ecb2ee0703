"""Command-line interface for cartengine."""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation

from . import __version__
from .config import Settings
from .coupons import CouponValidator
from .errors import CartEngineError, StoreNotInitializedError
from .invoice import build_invoice, render_invoice_text
from .json_store import JsonStoreBackend
from .models import Coupon, DiscountType, Rejection, parse_timestamp
from .observability import configure_logging
from .orders import OrderTracker


def get_store(settings: Settings | None = None) -> JsonStoreBackend:
    """Get the local JsonStoreBackend, which must already be initialized."""
    settings = settings or Settings()
    store = JsonStoreBackend(settings.data_dir)
    if not store.exists():
        raise StoreNotInitializedError(str(store.store_path))
    return store


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a valid amount: {value}")


def _timestamp(value: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 timestamp: {value}")


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize the local data store."""
    try:
        settings = Settings()
        store = JsonStoreBackend(settings.data_dir)
        if store.exists() and not args.force:
            print(
                f"Error: Store already exists at {store.store_path} (use --force to reset)",
                file=sys.stderr,
            )
            return 1

        store.init(force=args.force)
        print(f"Initialized cartengine store at {store.store_path}")
        return 0

    except (CartEngineError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_product_add(args: argparse.Namespace) -> int:
    """Add or replace a product."""
    try:
        store = get_store()
        store.put_product(
            product_id=args.product_id,
            name=args.name,
            price=args.price,
            image_url=args.image,
            brand=args.brand,
        )
        print(f"Saved product: {args.product_id}")
        print(f"  Name: {args.name}")
        print(f"  Price: ₹{args.price}")
        return 0

    except CartEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_stock_set(args: argparse.Namespace) -> int:
    """Set remaining units for a product size."""
    try:
        store = get_store()
        entry = store.set_stock(args.product_id, args.size, args.quantity)
        print(f"Stock for {entry.product_id} size {entry.size:g}: {entry.quantity}")
        return 0

    except (CartEngineError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_stock_show(args: argparse.Namespace) -> int:
    """Show stock levels."""
    try:
        store = get_store()
        entries = store.list_stock(args.product_id)

        if not entries:
            print("No stock recorded.")
            return 0

        if args.json:
            print(json.dumps([e.to_row() for e in entries], indent=2))
        else:
            for e in sorted(entries, key=lambda e: (e.product_id, e.size)):
                status = "sold out" if e.quantity == 0 else f"{e.quantity} left"
                print(f"  {e.product_id}  size {e.size:g}  {status}")
        return 0

    except CartEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_coupon_add(args: argparse.Namespace) -> int:
    """Add or replace a coupon."""
    try:
        store = get_store()
        coupon = Coupon(
            code=args.code.strip().upper(),
            discount_type=DiscountType(args.type),
            discount_value=args.value,
            starts_at=args.starts,
            expires_at=args.expires,
            usage_limit_total=args.limit,
            min_spend_amount=args.min_spend,
            is_active=not args.disabled,
        )
        store.put_coupon(coupon)

        print(f"Saved coupon: {coupon.code}")
        if coupon.discount_type is DiscountType.PERCENTAGE:
            print(f"  Discount: {coupon.discount_value}%")
        else:
            print(f"  Discount: ₹{coupon.discount_value}")
        if coupon.min_spend_amount is not None:
            print(f"  Minimum spend: ₹{coupon.min_spend_amount}")
        if coupon.usage_limit_total is not None:
            print(f"  Usage limit: {coupon.usage_limit_total}")
        return 0

    except CartEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_coupon_check(args: argparse.Namespace) -> int:
    """Check whether a coupon applies to a subtotal."""
    try:
        store = get_store()
        result = asyncio.run(CouponValidator(store).validate(args.code, args.subtotal))

        if isinstance(result, Rejection):
            if args.json:
                print(json.dumps({"eligible": False, **result.to_dict()}, indent=2))
            else:
                print(f"Rejected: {result.message}")
            return 2

        if args.json:
            print(json.dumps({"eligible": True, **result.to_dict()}, indent=2))
        else:
            print(f"Coupon {result.code} applies: -₹{result.discount_amount}")
        return 0

    except CartEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_order_show(args: argparse.Namespace) -> int:
    """Show an order's invoice."""
    try:
        store = get_store()
        order = asyncio.run(OrderTracker(store).get(args.order_id))

        if args.json:
            print(json.dumps(order.to_dict(), indent=2))
        else:
            print(render_invoice_text(build_invoice(order)))
            print(f"Status: {order.status.value}")
        return 0

    except CartEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_order_status(args: argparse.Namespace) -> int:
    """Move an order to a new status."""
    try:
        store = get_store()
        order = asyncio.run(OrderTracker(store).advance(args.order_id, args.status))
        print(f"Order {order.order_code or order.id} is now {order.status.value}")
        return 0

    except ValueError:
        print(f"Error: Unknown order status: {args.status}", file=sys.stderr)
        return 1
    except CartEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = Settings()
        if settings.backend == "json" and not JsonStoreBackend(settings.data_dir).exists():
            print("Warning: store not initialized. Run 'cartengine init' first.", file=sys.stderr)
            print("Starting server anyway...", file=sys.stderr)

        print("Starting cartengine API server...")
        print(f"Backend: {settings.backend}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "cartengine.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            workers=1,  # The JSON store's locks are per process
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="cartengine",
        description="Inventory-aware cart, coupon pricing and order commit.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize the local data store")
    init_parser.add_argument(
        "--force", "-f", action="store_true", help="Reset an existing store"
    )

    # product (subcommand group)
    product_parser = subparsers.add_parser("product", help="Manage products")
    product_subparsers = product_parser.add_subparsers(dest="product_command")

    product_add_parser = product_subparsers.add_parser("add", help="Add or replace a product")
    product_add_parser.add_argument("product_id", help="Product ID")
    product_add_parser.add_argument("--name", "-n", required=True, help="Display name")
    product_add_parser.add_argument("--price", type=_decimal, required=True, help="Unit price")
    product_add_parser.add_argument("--brand", help="Brand")
    product_add_parser.add_argument("--image", help="Image URL")

    # stock (subcommand group)
    stock_parser = subparsers.add_parser("stock", help="Manage stock levels")
    stock_subparsers = stock_parser.add_subparsers(dest="stock_command")

    stock_set_parser = stock_subparsers.add_parser("set", help="Set units for a product size")
    stock_set_parser.add_argument("product_id", help="Product ID")
    stock_set_parser.add_argument("size", type=float, help="Shoe size")
    stock_set_parser.add_argument("quantity", type=int, help="Units in stock")

    stock_show_parser = stock_subparsers.add_parser("show", help="Show stock levels")
    stock_show_parser.add_argument("product_id", nargs="?", help="Only this product")
    stock_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # coupon (subcommand group)
    coupon_parser = subparsers.add_parser("coupon", help="Manage coupons")
    coupon_subparsers = coupon_parser.add_subparsers(dest="coupon_command")

    coupon_add_parser = coupon_subparsers.add_parser("add", help="Add or replace a coupon")
    coupon_add_parser.add_argument("code", help="Coupon code")
    coupon_add_parser.add_argument(
        "--type", "-t",
        choices=[t.value for t in DiscountType],
        default=DiscountType.PERCENTAGE.value,
        help="Discount type (default: percentage)",
    )
    coupon_add_parser.add_argument("--value", "-v", type=_decimal, required=True, help="Discount value")
    coupon_add_parser.add_argument("--min-spend", type=_decimal, help="Minimum subtotal")
    coupon_add_parser.add_argument("--limit", type=int, help="Total usage limit")
    coupon_add_parser.add_argument("--starts", type=_timestamp, help="Start time (ISO 8601)")
    coupon_add_parser.add_argument("--expires", type=_timestamp, help="Expiry time (ISO 8601)")
    coupon_add_parser.add_argument("--disabled", action="store_true", help="Create inactive")

    coupon_check_parser = coupon_subparsers.add_parser(
        "check", help="Check a coupon against a subtotal"
    )
    coupon_check_parser.add_argument("code", help="Coupon code")
    coupon_check_parser.add_argument("subtotal", type=_decimal, help="Cart subtotal")
    coupon_check_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # order (subcommand group)
    order_parser = subparsers.add_parser("order", help="Inspect and update orders")
    order_subparsers = order_parser.add_subparsers(dest="order_command")

    order_show_parser = order_subparsers.add_parser("show", help="Show an order invoice")
    order_show_parser.add_argument("order_id", help="Order ID")
    order_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    order_status_parser = order_subparsers.add_parser("status", help="Change an order's status")
    order_status_parser.add_argument("order_id", help="Order ID")
    order_status_parser.add_argument("status", help="New status")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    return parser


GROUP_COMMANDS = {
    "product": ("product_command", {"add": cmd_product_add}),
    "stock": ("stock_command", {"set": cmd_stock_set, "show": cmd_stock_show}),
    "coupon": ("coupon_command", {"add": cmd_coupon_add, "check": cmd_coupon_check}),
    "order": ("order_command", {"show": cmd_order_show, "status": cmd_order_status}),
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    settings = Settings()
    configure_logging(log_level=settings.log_level, json_format=settings.log_json)

    # Handle subcommand groups
    if args.command in GROUP_COMMANDS:
        dest, handlers = GROUP_COMMANDS[args.command]
        sub = getattr(args, dest, None)
        if not sub:
            parser.parse_args([args.command, "--help"])
            return 0
        return handlers[sub](args)

    commands = {
        "init": cmd_init,
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
