"""Command-line interface for stockcart."""

import argparse
import json
import sys
from pathlib import Path

from . import __version__
from .config import get_settings
from .errors import StockcartError
from .models import Product, Variant, _money
from .observability import configure_logging
from .services import build_services


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = get_settings()
        print("Starting stockcart API server...")
        print(f"Data directory: {settings.data_dir}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        if args.watch:
            from .services import get_services

            get_services().watcher.start()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "stockcart.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            workers=1,  # The stock ledger's release tracking is per process
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_watch(args: argparse.Namespace) -> int:
    """Run the restock watcher in the foreground until interrupted."""
    services = build_services()
    watcher = services.watcher
    if args.interval:
        watcher.interval_seconds = args.interval
    print(f"Watching for restocks every {watcher.interval_seconds:g}s (Ctrl-C to stop)")
    try:
        watcher.run_forever()
    except KeyboardInterrupt:
        print("Stopped.")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Run a single restock sweep."""
    report = build_services().watcher.sweep()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(f"Users processed: {report.users_processed}")
        print(f"Entries restocked: {report.entries_restocked}")
        print(f"Auto-added to cart: {len(report.auto_added)}")
        if report.auto_add_failed:
            print(f"Auto-add failures: {len(report.auto_add_failed)}")
        print(f"Notifications sent: {report.notifications_sent}")
        if report.users_pending:
            print(f"Users left for next sweep: {report.users_pending}")
        for error in report.errors:
            print(f"  ! {error}")

    return 1 if report.errors else 0


def cmd_stock(args: argparse.Namespace) -> int:
    """Show available stock for a product or variant."""
    try:
        available = build_services().ledger.available(args.product_id, args.variant)
        target = args.product_id if not args.variant else f"{args.product_id} ({args.variant})"
        print(f"{target}: {available} available")
        return 0

    except StockcartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _product_from_json(data: dict) -> Product:
    variants = [
        Variant(
            id=v["id"],
            name=v["name"],
            price=_money(v["price"]),
            stock_quantity=int(v.get("stock_quantity", 0)),
        )
        for v in data.get("variants", [])
    ]
    product = Product.create(
        name=data["name"],
        price=data["price"],
        stock_quantity=int(data.get("stock_quantity", 0)),
        variants=variants,
        product_id=data.get("id"),
    )
    return product


def cmd_catalog_import(args: argparse.Namespace) -> int:
    """Load products from a JSON file into the catalog."""
    path = Path(args.file)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read {path}: {e}", file=sys.stderr)
        return 1

    items = raw.get("products", []) if isinstance(raw, dict) else raw
    try:
        products = [_product_from_json(item) for item in items]
    except (KeyError, TypeError, ValueError) as e:
        print(f"Error: invalid product entry: {e}", file=sys.stderr)
        return 1

    try:
        count = build_services().stores.catalog.upsert_products(products)
    except StockcartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Imported {count} product(s)")
    return 0


def cmd_catalog_list(args: argparse.Namespace) -> int:
    """List catalog products with their stock."""
    products = build_services().stores.catalog.list_products()

    if not products:
        print("No products found.")
        return 0

    if args.json:
        print(json.dumps([p.to_dict() for p in products], indent=2))
        return 0

    print(f"Products ({len(products)}):")
    for p in products:
        flag = "" if p.in_stock else "  [out of stock]"
        print(f"  {p.id}  {p.name}  {p.stock_quantity}{flag}")
        for v in p.variants:
            vflag = "" if v.in_stock else "  [out of stock]"
            print(f"      {v.id}  {v.name}  {v.stock_quantity}{vflag}")
    return 0


def cmd_carts_cleanup(args: argparse.Namespace) -> int:
    """Remove carts that haven't been touched recently."""
    try:
        services = build_services()
        max_age = args.max_age_hours or services.settings.cart_max_age_hours
        removed = services.carts.cleanup_old_carts(max_age)
        print(f"Removed {len(removed)} cart(s) older than {max_age}h")
        return 0

    except StockcartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockcart",
        description="Inventory-aware cart, checkout and restock watcher.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

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
    serve_parser.add_argument(
        "--watch", action="store_true", help="Also run the restock watcher in the server"
    )

    # watch
    watch_parser = subparsers.add_parser("watch", help="Run the restock watcher")
    watch_parser.add_argument(
        "--interval", type=float, help="Seconds between sweeps (default: from settings)"
    )

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Run one restock sweep")
    sweep_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # stock
    stock_parser = subparsers.add_parser("stock", help="Show available stock")
    stock_parser.add_argument("product_id", help="Product ID")
    stock_parser.add_argument("--variant", "-v", help="Variant ID")

    # catalog (subcommand group)
    catalog_parser = subparsers.add_parser("catalog", help="Manage the product catalog")
    catalog_subparsers = catalog_parser.add_subparsers(dest="catalog_command")

    catalog_import_parser = catalog_subparsers.add_parser(
        "import", help="Import products from a JSON file"
    )
    catalog_import_parser.add_argument("file", help="JSON list of products")

    catalog_list_parser = catalog_subparsers.add_parser("list", help="List products")
    catalog_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # carts (subcommand group)
    carts_parser = subparsers.add_parser("carts", help="Manage carts")
    carts_subparsers = carts_parser.add_subparsers(dest="carts_command")

    carts_cleanup_parser = carts_subparsers.add_parser(
        "cleanup", help="Remove stale carts"
    )
    carts_cleanup_parser.add_argument(
        "--max-age-hours", type=int, help="Age limit (default: from settings)"
    )

    return parser


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging(log_level=settings.log_level, json_format=settings.log_json)

    # Handle catalog subcommands
    if args.command == "catalog":
        if not getattr(args, "catalog_command", None):
            parser.parse_args(["catalog", "--help"])
            return 0
        if args.catalog_command == "import":
            return cmd_catalog_import(args)
        elif args.catalog_command == "list":
            return cmd_catalog_list(args)

    # Handle carts subcommands
    if args.command == "carts":
        if not getattr(args, "carts_command", None):
            parser.parse_args(["carts", "--help"])
            return 0
        if args.carts_command == "cleanup":
            return cmd_carts_cleanup(args)

    commands = {
        "serve": cmd_serve,
        "watch": cmd_watch,
        "sweep": cmd_sweep,
        "stock": cmd_stock,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
