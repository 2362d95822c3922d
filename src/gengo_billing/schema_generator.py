from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from .models.base import DBSerializableModel
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.payment import PendingPayment
from .models.subscription import Subscription
from .models.transaction import CreditTransaction
from .models.trial_history import TrialHistoryRecord
from .models.user import UserAccount


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserAccount,
    Subscription,
    CreditTransaction,
    TrialHistoryRecord,
    PendingPayment,
    NotificationEvent,
    LedgerEntry,
]

_SQL_TYPES: Dict[str, Dict[str, str]] = {
    "postgres": {
        "integer": "BIGINT",
        "number": "DOUBLE PRECISION",
        "boolean": "BOOLEAN",
        "string": "TEXT",
        "datetime": "TIMESTAMPTZ",
        "object": "JSONB",
        "array": "JSONB",
    },
    "mysql": {
        "integer": "BIGINT",
        "number": "DOUBLE",
        "boolean": "BOOLEAN",
        "string": "VARCHAR(255)",
        "datetime": "DATETIME(6)",
        "object": "JSON",
        "array": "JSON",
    },
}

_BSON_TYPES: Dict[str, str] = {
    "integer": "long",
    "number": "double",
    "boolean": "bool",
    "string": "string",
    "datetime": "date",
    "object": "object",
    "array": "array",
}


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    This is the single source of truth; SQL/NoSQL specific renderers convert it.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """Render CREATE TABLE and CREATE INDEX statements for every collection."""
    if dialect not in _SQL_TYPES:
        raise ValueError(f"unsupported SQL dialect: {dialect}")
    quote = "`" if dialect == "mysql" else '"'
    statements: List[str] = []
    for table_name, spec in schema.items():
        pk = spec.get("primary_key") or "id"
        required = set(spec.get("required", []))
        columns: List[str] = []
        for field_name, meta in spec["properties"].items():
            sql_type = _map_logical_to_sql(meta["type"], dialect)
            nullable = "NOT NULL" if field_name in required or field_name == pk else "NULL"
            columns.append(f"    {quote}{field_name}{quote} {sql_type} {nullable}")
        columns.append(f"    PRIMARY KEY ({quote}{pk}{quote})")
        statements.append(
            f"CREATE TABLE IF NOT EXISTS {quote}{table_name}{quote} (\n" + ",\n".join(columns) + "\n);"
        )
        for index in spec.get("indexes", []):
            unique = "UNIQUE " if index["unique"] else ""
            field = index["field"]
            statements.append(
                f"CREATE {unique}INDEX {quote}ix_{table_name}_{field}{quote} "
                f"ON {quote}{table_name}{quote} ({quote}{field}{quote});"
            )
        statements.append("")
    return "\n".join(statements)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render MongoDB collection settings: a `$jsonSchema` validator and the
    index list for each collection, as JSON.
    """
    collections: Dict[str, Any] = {}
    for name, spec in schema.items():
        properties: Dict[str, Any] = {}
        for field_name, meta in spec["properties"].items():
            bson_type: Any = _BSON_TYPES.get(meta["type"], "object")
            if meta["nullable"]:
                bson_type = [bson_type, "null"]
            prop: Dict[str, Any] = {"bsonType": bson_type}
            if meta.get("description"):
                prop["description"] = meta["description"]
            properties["_id" if field_name == spec.get("primary_key") else field_name] = prop
        required = [
            "_id" if field == spec.get("primary_key") else field for field in spec.get("required", [])
        ]
        collections[name] = {
            "validator": {"$jsonSchema": {"bsonType": "object", "required": required, "properties": properties}},
            "indexes": [
                {"key": {index["field"]: 1}, "unique": index["unique"]} for index in spec.get("indexes", [])
            ],
        }
    return json.dumps(collections, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    return _SQL_TYPES[dialect].get(logical_type.lower(), _SQL_TYPES[dialect]["string"])


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Generate DB schemas for the billing ledger.")
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql", "logical"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        choices=sorted(_SQL_TYPES),
        help="SQL dialect.",
    )
    parser.add_argument("--output", type=Path, help="Write to this file instead of stdout.")
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.backend == "sql":
        rendered = render_sql_ddl(schema, dialect=args.dialect)
    elif args.backend == "nosql":
        rendered = render_nosql_schema(schema)
    else:
        rendered = json.dumps(schema, indent=2, default=str)

    if args.output:
        args.output.write_text(rendered, encoding="utf-8")
    else:
        print(rendered)


if __name__ == "__main__":
    main()
