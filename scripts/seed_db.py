#!/usr/bin/env python3
import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

import touchpoint_gap_audit as audit  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed the Touchpoint Gap Audit tables with sample data.")
    parser.add_argument("--input", default=str(ROOT / "data" / "sample_touchpoints.csv"), help="CSV path for seed run")
    parser.add_argument("--schema", default=audit.DEFAULT_DB_SCHEMA, help="Postgres schema name")
    parser.add_argument("--tag", default="seed", help="Label for the seeded run")
    parser.add_argument("--cadence", type=int, default=audit.DEFAULT_CADENCE_DAYS, help="Expected cadence in days")
    parser.add_argument("--as-of", help="Override the as-of date for the seed run (YYYY-MM-DD)")
    parser.add_argument("--dedupe-day", action="store_true", help="Deduplicate same-day contacts per scholar")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    audit.configure_logging("INFO")
    dsn = audit.resolve_db_dsn()
    if not dsn:
        raise SystemExit(
            "Database URL missing. Set TOUCHPOINT_GAP_AUDIT_DB_URL, GS_DB_DSN or DATABASE_URL "
            "(or GS_DB_HOST/GS_DB_NAME/GS_DB_USER/GS_DB_PASSWORD)."
        )

    try:
        policy = audit.AuditPolicy.create(
            as_of=audit.resolve_as_of(args.as_of),
            cadence_days=args.cadence,
            dedupe_by_day=args.dedupe_day,
        )
        config = audit.DBConfig(dsn=dsn, schema=audit.validate_schema_name(args.schema), tag=args.tag)
        report = audit.build_report(audit.load_touchpoints(args.input), policy)
        run_id = audit.seed_database(report, config)
    except audit.AuditError as exc:
        raise SystemExit(f"Error: {exc}") from exc

    if run_id:
        print(f"Seeded sample audit run into schema '{config.schema}' (run_id={run_id}).")


if __name__ == "__main__":
    main()
