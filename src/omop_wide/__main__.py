"""
Command line interface.

Usage:
    python -m omop_wide tables --url duckdb:///cdm.duckdb
    python -m omop_wide columns measurement --url duckdb:///cdm.duckdb --drop-empty
    python -m omop_wide concepts measurement --url postgresql://host/cdm --schema cdm
    python -m omop_wide table measurement --url duckdb:///cdm.duckdb --concept 3004501 --output glucose.csv
    python -m omop_wide assemble --url duckdb:///cdm.duckdb --output wide.parquet
"""

import argparse
import sys
from pathlib import Path

import polars as pl

from omop_wide import service
from omop_wide.core.config_loader import load_assembly_config
from omop_wide.core.errors import OMOPError
from omop_wide.logging_config import configure_logging
from omop_wide.storage.connection import Resource


def write_output(df: pl.DataFrame, output: Path | None) -> None:
    """Write a frame to CSV or Parquet (by extension), or print it."""
    if output is None:
        with pl.Config(tbl_rows=50, tbl_cols=20):
            print(df)
        return

    if output.suffix.lower() == ".parquet":
        df.write_parquet(output)
    else:
        df.write_csv(output)
    print(f"Wrote {df.height} rows x {df.width} columns to {output}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="omop_wide", description="Wide-table assembly for OMOP CDM databases")
    parser.add_argument("--url", required=True, help="Database URL (duckdb:///path.duckdb, postgresql://...)")
    parser.add_argument("--schema", help="CDM schema (default: connection default)")
    parser.add_argument("--vocabulary-schema", help="Schema holding the concept table (default: CDM schema)")
    parser.add_argument("--config", type=Path, help="Config file (default: config/omop_wide.yaml)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("tables", help="List tables")

    columns = subparsers.add_parser("columns", help="List the columns of a table")
    columns.add_argument("table")
    columns.add_argument("--drop-empty", action="store_true", help="Leave out columns holding only nulls")

    concepts = subparsers.add_parser("concepts", help="List the concepts occurring in a table")
    concepts.add_argument("table")
    concepts.add_argument("--output", type=Path, help="Output file (.csv or .parquet)")

    table = subparsers.add_parser("table", help="Fetch one table in wide format")
    table.add_argument("table")
    table.add_argument("--concept", action="append", dest="concepts", help="Concept id to keep (repeatable)")
    table.add_argument("--column", action="append", dest="columns", help="Column to keep (repeatable)")
    table.add_argument("--person", action="append", dest="persons", help="Person id to keep (repeatable)")
    table.add_argument("--merge-column", help="Column identifying output rows (default: person_id)")
    table.add_argument("--drop-empty", action="store_true", help="Drop columns holding only nulls")
    table.add_argument("--wide-longitudinal", action="store_true", help="One row per person, repeated events sequenced")
    table.add_argument("--complete-time-points", action="store_true", help="Add every (person, date) combination")
    table.add_argument("--output", type=Path, help="Output file (.csv or .parquet)")

    assemble = subparsers.add_parser("assemble", help="Merge every table related to the root into one wide table")
    assemble.add_argument("--root-table", help="Root table (default: person)")
    assemble.add_argument("--output", type=Path, help="Output file (.csv or .parquet)")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    config = load_assembly_config(args.config)
    configure_logging(config.log_level)

    resource = Resource(url=args.url, schema=args.schema, vocabulary_schema=args.vocabulary_schema)

    try:
        if args.command == "tables":
            for name in service.list_tables(resource):
                print(name)
        elif args.command == "columns":
            for name in service.list_columns(resource, args.table, drop_empty=args.drop_empty):
                print(name)
        elif args.command == "concepts":
            write_output(service.list_concepts(resource, args.table, config=config), args.output)
        elif args.command == "table":
            df = service.get_table(
                resource,
                args.table,
                concept_filter=args.concepts,
                column_filter=args.columns,
                person_filter=args.persons,
                merge_column=args.merge_column,
                drop_empty_columns=args.drop_empty,
                wide_longitudinal=args.wide_longitudinal,
                complete_time_points=args.complete_time_points,
                config=config,
            )
            write_output(df, args.output)
        elif args.command == "assemble":
            write_output(service.create_full_assembly(resource, args.root_table, config=config), args.output)
    except OMOPError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
