from __future__ import annotations

import json

import pytest

from gengo_billing.models.payment import PendingPayment
from gengo_billing.schema_generator import (
    MODEL_REGISTRY,
    generate_logical_schema,
    main,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_every_collection():
    schema = generate_logical_schema()
    assert set(schema) == {model.collection_name for model in MODEL_REGISTRY}
    assert "credit_trial_history" in schema

    payments = schema[PendingPayment.collection_name]
    assert payments["properties"]["amount"]["type"] == "integer"
    assert payments["properties"]["status"]["type"] == "string"
    assert payments["properties"]["status"]["default"] == "PENDING"
    assert payments["properties"]["paid_at"]["nullable"]
    assert {"field": "external_id", "unique": True} in payments["indexes"]


def test_sql_ddl_has_tables_and_indexes():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "credit_subscriptions"' in ddl
    assert '"credit_trial_history"' in ddl
    assert '"amount" BIGINT NOT NULL' in ddl
    assert 'PRIMARY KEY ("id")' in ddl
    assert (
        'CREATE UNIQUE INDEX "ix_credit_pending_payments_external_id" '
        'ON "credit_pending_payments" ("external_id");'
    ) in ddl

    mysql = render_sql_ddl(generate_logical_schema(), dialect="mysql")
    assert "CREATE TABLE IF NOT EXISTS `credit_transactions`" in mysql
    assert "DATETIME(6)" in mysql

    with pytest.raises(ValueError):
        render_sql_ddl(generate_logical_schema(), dialect="oracle")


def test_nosql_schema_maps_primary_key_to_id():
    collections = json.loads(render_nosql_schema(generate_logical_schema()))

    subscriptions = collections["credit_subscriptions"]
    properties = subscriptions["validator"]["$jsonSchema"]["properties"]
    assert "_id" in properties
    assert "id" not in properties
    assert properties["current_period_end"]["bsonType"] == "date"
    assert {"key": {"user_id": 1}, "unique": True} in subscriptions["indexes"]


def test_cli_writes_output_file(tmp_path):
    target = tmp_path / "schema.sql"
    main(["--backend", "sql", "--dialect", "mysql", "--output", str(target)])
    assert "CREATE TABLE" in target.read_text(encoding="utf-8")


def test_cli_prints_logical_schema(capsys):
    main(["--backend", "logical"])
    assert "credit_ledger" in json.loads(capsys.readouterr().out)
