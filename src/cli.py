"""
ParkLedger CLI

Commands:
  serve          - Run the API server
  init-db        - Create the schema
  create-driver  - Provision a driver account
  create-owner   - Provision a parking owner account
  balance        - Show an account balance
"""

import argparse
import os
import sys


def _accounts(args):
    from persistence.database import Database
    from core.accounts import AccountManager

    db = Database(args.database_url)
    db.initialize()
    return AccountManager(db)


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    # The app is imported by path, so the database choice travels through the environment
    if args.database_url:
        os.environ["DATABASE_URL"] = args.database_url

    print(f"Starting ParkLedger on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_init_db(args):
    """Create the schema."""
    from persistence.database import Database

    db = Database(args.database_url)
    db.initialize()
    print(f"Database ready: {db.database_url}")


def _report(result, label):
    from core.results import ErrorType

    if result.type == ErrorType.NO_ERROR:
        print(f"Created {label}")
    elif result.type == ErrorType.DUPL:
        print(f"Error: {label} already exists")
        sys.exit(1)
    else:
        print(f"Error: could not create {label} ({result.type.value})")
        sys.exit(1)


def cmd_create_driver(args):
    """Provision a driver account."""
    result = _accounts(args).create_driver(args.email, balance=args.balance)
    _report(result, f"driver {args.email}")


def cmd_create_owner(args):
    """Provision a parking owner account."""
    try:
        result = _accounts(args).create_owner(
            args.email,
            lat=args.lat,
            lon=args.lon,
            rate_per_minute=args.rate,
            balance=args.balance,
        )
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    _report(result, f"owner {args.email}")


def cmd_balance(args):
    """Show an account balance."""
    accounts = _accounts(args)
    if args.owner:
        result = accounts.get_owner_balance(args.email)
    else:
        result = accounts.get_driver_balance(args.email)

    if not result.ok:
        print(f"Error: {result.type.value}")
        sys.exit(1)
    print(f"{args.email}: {result.balance}")


def main():
    parser = argparse.ArgumentParser(
        description="ParkLedger - Parking session billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # init-db
    subparsers.add_parser("init-db", help="Create the schema")

    # create-driver
    driver_parser = subparsers.add_parser("create-driver", help="Provision a driver")
    driver_parser.add_argument("email")
    driver_parser.add_argument("--balance", default="0", help="Opening balance")

    # create-owner
    owner_parser = subparsers.add_parser("create-owner", help="Provision a parking owner")
    owner_parser.add_argument("email")
    owner_parser.add_argument("--lat", type=float)
    owner_parser.add_argument("--lon", type=float)
    owner_parser.add_argument("--rate", default="1.00", help="Rate per minute")
    owner_parser.add_argument("--balance", default="0", help="Opening balance")

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show account balance")
    balance_parser.add_argument("email")
    balance_parser.add_argument("--owner", action="store_true", help="Look up an owner account")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "init-db":
        cmd_init_db(args)
    elif args.command == "create-driver":
        cmd_create_driver(args)
    elif args.command == "create-owner":
        cmd_create_owner(args)
    elif args.command == "balance":
        cmd_balance(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
