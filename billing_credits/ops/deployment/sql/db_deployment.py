# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# ops/deployment/sql/db_deployment.py

import argparse
import logging
import os
import re
import sys
from typing import List

from billing_credits.infra.namespaces import BILLING
from billing_credits.infra.relational.psql.psql_base import PostgreSqlDbMgr, render_sql_file

logger = logging.getLogger(__name__)

LEDGER_COMPONENT = "billing-ledger"

SUPPORTED_COMPONENTS = [
    LEDGER_COMPONENT,
]

sql_location = os.path.join(os.path.dirname(__file__), "billing")


def safe_schema_name(name: str) -> str:
    """
    Turn an arbitrary string into a safe PostgreSQL schema name:
      - lowercase
      - only letters, digits, and underscores
      - starts with a letter or underscore
      - maximum length of 63 characters
    """
    sanitized = re.sub(r'[^A-Za-z0-9_]', '_', name or "")
    sanitized = re.sub(r'_+', '_', sanitized).strip('_').lower()
    if not re.match(r'^[a-z_]', sanitized):
        sanitized = '_' + sanitized
    sanitized = sanitized[:63]
    return sanitized if sanitized.strip('_') else BILLING.DEFAULT_SCHEMA


def _sql_file(op: str, component: str) -> str:
    prefix = "deploy" if op == "deploy" else "drop"
    return os.path.join(sql_location, f"{prefix}-{component}.sql")


def load_schema_sql(schema: str = BILLING.DEFAULT_SCHEMA, op: str = "deploy",
                    component: str = LEDGER_COMPONENT) -> str:
    """Rendered DDL for async callers (bootstrap, integration tests)."""
    return render_sql_file(_sql_file(op, component), {"SCHEMA": safe_schema_name(schema)})


def split_statements(sql: str) -> List[str]:
    out = []
    for stmt in sql.split(";"):
        lines = [ln for ln in stmt.splitlines() if not ln.strip().startswith("--")]
        body = "\n".join(lines).strip()
        if body:
            out.append(body)
    return out


def run(op, component, schema=None, mgr=None):
    """
    Execute SQL deployment/deletion for a given component.

    Args:
        op: "deploy" or "delete"
        component: Component name (e.g., "billing-ledger")
        schema: Target schema (defaults to BILLING_SCHEMA env or "billing")
        mgr: Optional PostgreSqlDbMgr (tests)
    """
    if component not in SUPPORTED_COMPONENTS:
        raise ValueError(f"Unsupported component: {component!r}")
    if op not in ("deploy", "delete"):
        raise ValueError("Please specify --deploy or --delete.")

    mgr = mgr or PostgreSqlDbMgr()
    schema_name = safe_schema_name(schema or os.getenv("BILLING_SCHEMA") or BILLING.DEFAULT_SCHEMA)
    substitutions = {"SCHEMA": schema_name}

    try:
        mgr.execute_sql_file(_sql_file(op, component), substitutions=substitutions)
    except Exception:
        logger.exception("Schema %s failed: component=%s schema=%s", op, component, schema_name)
        raise
    logger.info("Schema %s succeeded: component=%s schema=%s", op, component, schema_name)
    return schema_name


def main(args, parser=None):
    """
    Main function to handle CLI arguments and execute scripts.
    """
    if args.deploy:
        op = "deploy"
    elif args.delete:
        op = "delete"
    else:
        print("Please specify --deploy or --delete.")
        parser and parser.print_help()
        return False

    run(op, args.component, schema=args.schema)
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Database tool for billing ledger schema deployments.")
    parser.add_argument(
        "--component", action="store", choices=SUPPORTED_COMPONENTS, default=LEDGER_COMPONENT,
        help=f"Name of the component to deploy {SUPPORTED_COMPONENTS}."
    )
    parser.add_argument(
        "--deploy", action="store_true", help="Deploy the database schema and indices."
    )
    parser.add_argument(
        "--delete", action="store_true", help="Delete the database tables."
    )
    parser.add_argument(
        "--schema", help="Target schema (default: $BILLING_SCHEMA or 'billing')"
    )
    return parser


def cli(argv=None):
    from dotenv import load_dotenv, find_dotenv
    from billing_credits.logging_config import configure_logging

    load_dotenv(find_dotenv(usecwd=True))
    configure_logging()

    parser = build_parser()
    args = parser.parse_args(argv)
    if not main(args, parser):
        sys.exit(1)


if __name__ == "__main__":
    cli()
