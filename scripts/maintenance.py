"""Operator commands for the storefront maintenance window.

Usage:
    python -m scripts.maintenance status
    python -m scripts.maintenance init
    python -m scripts.maintenance enable [--start ISO] [--end ISO] [--message TEXT]
    python -m scripts.maintenance disable

Changes made here reach running API processes through their settings poll job.
"""

import argparse
import sys

from app import crud, schemas
from app.database import SessionLocal
from app.core.maintenance_policy import MaintenanceConfig, is_active, utcnow


def print_settings(db_settings):
    config = MaintenanceConfig.from_record(db_settings)
    print(f"  ID:       {db_settings.id}")
    print(f"  Enabled:  {config.enabled}")
    print(f"  Active:   {is_active(config, utcnow())}")
    print(f"  Start:    {config.window_start or 'Not set'}")
    print(f"  End:      {config.window_end or 'Not set'}")
    print(f"  Title:    {config.title}")
    print(f"  Message:  {config.message}")
    print(f"  Version:  {db_settings.version}")
    print(f"  Updated:  {db_settings.updated_at}")


def status(db, args) -> int:
    db_settings = crud.get_maintenance_settings(db)
    if db_settings is None:
        print("No maintenance settings found (gate treats this as disabled)")
        print("Run 'init' to create the default record")
        return 1
    print("Maintenance settings:")
    print_settings(db_settings)
    return 0


def init(db, args) -> int:
    if crud.get_maintenance_settings(db) is not None:
        print("Maintenance settings already exist")
        return status(db, args)
    db_settings = crud.create_maintenance_settings(db)
    print("Default maintenance settings created:")
    print_settings(db_settings)
    return 0


def enable(db, args) -> int:
    db_settings = crud.get_maintenance_settings(db)
    fields = {"enabled": True}
    if args.start is not None:
        fields["window_start"] = args.start or None
    if args.end is not None:
        fields["window_end"] = args.end or None
    if args.message:
        fields["message"] = args.message

    if db_settings is None:
        db_settings = crud.create_maintenance_settings(db, schemas.MaintenanceSettingsCreate(**fields))
    else:
        db_settings = crud.update_maintenance_settings(db, db_settings, schemas.MaintenanceSettingsUpdate(**fields))

    print("Maintenance mode is now ENABLED")
    print_settings(db_settings)
    return 0


def disable(db, args) -> int:
    db_settings = crud.get_maintenance_settings(db)
    if db_settings is None:
        print("No maintenance settings found, nothing to disable")
        return 1
    if not db_settings.is_enabled:
        print("Maintenance mode is already disabled")
        return 0

    db_settings = crud.update_maintenance_settings(db, db_settings, schemas.MaintenanceSettingsUpdate(enabled=False))
    print("Maintenance mode is now DISABLED")
    print_settings(db_settings)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Manage the storefront maintenance window")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="show the current settings").set_defaults(func=status)
    commands.add_parser("init", help="create the default settings record").set_defaults(func=init)

    enable_parser = commands.add_parser("enable", help="turn maintenance mode on")
    enable_parser.add_argument("--start", help="window start (ISO 8601, empty to clear)")
    enable_parser.add_argument("--end", help="window end (ISO 8601, empty to clear)")
    enable_parser.add_argument("--message", help="notice message")
    enable_parser.set_defaults(func=enable)

    commands.add_parser("disable", help="turn maintenance mode off").set_defaults(func=disable)

    args = parser.parse_args(argv)
    db = SessionLocal()
    try:
        return args.func(db, args)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
