from __future__ import annotations

import argparse
import json
import textwrap
from typing import Any, Dict, List, Type

from .db import sql
from .models.allowance import DailyAllowance
from .models.base import DBSerializableModel
from .models.credits import CreditAccount, CreditPackage, CreditTransaction
from .models.ledger import LedgerEntry
from .models.usage import UsageMeter


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    DailyAllowance,
    CreditAccount,
    CreditTransaction,
    CreditPackage,
    LedgerEntry,
    UsageMeter,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Backend-agnostic description of every persisted model, keyed by
    collection / table name.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl() -> str:
    """
    PostgreSQL DDL exactly as ``PostgresDBManager.init_schema()`` applies it,
    for review or for running through a migration tool.
    """
    statements = [textwrap.dedent(s).strip() for s in sql.SCHEMA_STATEMENTS]
    return "\n\n".join(statements) + "\n"


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    JSON rendering of the logical schema, usable as a starting point for
    MongoDB collection validators.
    """
    return json.dumps(schema, indent=2, default=str)


def main(argv: List[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Print the storage schema of the usage metering core."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    args = parser.parse_args(argv)

    if args.backend == "sql":
        print(render_sql_ddl())
    else:
        print(render_nosql_schema(generate_logical_schema()))


if __name__ == "__main__":
    main()
