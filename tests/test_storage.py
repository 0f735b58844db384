"""Tests for BigQuery row building and the client's insert paths."""

import unittest
from datetime import datetime, timezone
from unittest import mock

from google.cloud.exceptions import NotFound

from harvester.models import (
    BatchPayload,
    Category,
    Confidence,
    DeadLetterEntry,
    ErrorType,
    InventoryResult,
    InventorySource,
    NormalizedProduct,
    ProductRecord,
    SourceResult,
    Strain,
    Weight,
)
from harvester.storage.bigquery_client import BigQueryClient, payload_to_product_rows, product_key
from harvester.storage.schema import TABLE_SCHEMAS

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _payload():
    product = NormalizedProduct(
        name="Chem 91", brand="Splash", category=Category.FLOWER, strain=Strain.HYBRID,
        thc=25.9, tac=33.23, weight=Weight(3.5, "g"), price=24.0,
    )
    inventory = InventoryResult(
        quantity=3, quantity_warning="3 left in stock", in_stock=True,
        source=InventorySource.PAGE_TEXT, confidence=Confidence.EXACT,
    )
    return BatchPayload(batch_id="batch-1", results=[
        SourceResult(source_id="a.com/menu", items=[
            ProductRecord(product=product, inventory=inventory, product_url="https://a.com/product/chem-91"),
            ProductRecord(product=NormalizedProduct(name="Mystery", brand=None, category=Category.OTHER)),
        ]),
        SourceResult(source_id="b.com/menu", status="error", error="HTTP 404"),
    ])


class TestProductRows(unittest.TestCase):

    def test_product_key(self):
        self.assertEqual(product_key("a.com/menu", "  Chem 91 "), "a.com/menu:chem 91")

    def test_rows(self):
        rows = payload_to_product_rows(_payload(), NOW)
        self.assertEqual(len(rows), 2)

        row = rows[0]
        self.assertEqual(row["batch_id"], "batch-1")
        self.assertEqual(row["product_key"], "a.com/menu:chem 91")
        self.assertEqual(row["strain"], "hybrid")
        self.assertEqual(row["weight_amount"], 3.5)
        self.assertEqual(row["weight_unit"], "g")
        self.assertEqual(row["quantity"], 3)
        self.assertEqual(row["inventory_source"], "page-text")
        self.assertEqual(row["inventory_confidence"], "exact")
        self.assertEqual(row["scraped_at"], NOW.isoformat())

    def test_rows_without_inventory(self):
        row = payload_to_product_rows(_payload(), NOW)[1]
        self.assertIsNone(row["quantity"])
        self.assertIsNone(row["in_stock"])
        self.assertIsNone(row["weight_amount"])

    def test_rows_match_schema(self):
        schema_names = {f.name for f in TABLE_SCHEMAS["scraped_products"]}
        for row in payload_to_product_rows(_payload(), NOW):
            self.assertEqual(set(row), schema_names)


class TestBigQueryClient(unittest.TestCase):

    def setUp(self):
        self.bq = mock.MagicMock()
        self.client = BigQueryClient("proj", "menus", client=self.bq)

    def test_ingest_batch(self):
        self.bq.insert_rows_json.return_value = []
        self.assertTrue(self.client.ingest_batch(_payload()))

        args, kwargs = self.bq.insert_rows_json.call_args
        self.assertEqual(args[0], "proj.menus.scraped_products")
        self.assertEqual(len(args[1]), 2)
        self.assertEqual(kwargs["row_ids"], ["batch-1:a.com/menu:chem 91", "batch-1:a.com/menu:mystery"])

    def test_ingest_batch_errors(self):
        self.bq.insert_rows_json.return_value = [{"index": 0, "errors": ["invalid"]}]
        self.assertFalse(self.client.ingest_batch(_payload()))

    def test_empty_payload_skips_insert(self):
        self.assertTrue(self.client.ingest_batch(BatchPayload(batch_id="batch-2")))
        self.bq.insert_rows_json.assert_not_called()

    def test_save_dead_letter_merges(self):
        entry = DeadLetterEntry(
            id="dl-1", source="a.com/menu", error_type=ErrorType.TIMEOUT,
            error_message="timed out", total_retries=4,
            first_attempt_at=NOW, last_attempt_at=NOW,
        )
        self.client.save_dead_letter(entry)

        query = self.bq.query.call_args[0][0]
        self.assertIn("MERGE `proj.menus.dead_letter_queue`", query)
        self.assertIn("WHEN MATCHED AND T.resolved_at IS NULL", query)
        job_config = self.bq.query.call_args[1]["job_config"]
        params = {p.name: p.value for p in job_config.query_parameters}
        self.assertEqual(params["id"], "dl-1")
        self.assertEqual(params["error_type"], "timeout")
        self.assertIsNone(params["resolution"])

    def test_load_unresolved_dead_letters(self):
        self.bq.query.return_value.result.return_value = [
            {
                "id": "dl-2", "source": "b.com/menu", "error_type": "http_error",
                "error_message": "HTTP 503", "status_code": 503, "batch_id": "batch-1",
                "total_retries": 8, "first_attempt_at": NOW, "last_attempt_at": NOW,
                "resolution": None, "resolved_at": None, "resolved_by": None, "notes": None,
            },
        ]
        entries = self.client.load_unresolved_dead_letters()

        query = self.bq.query.call_args[0][0]
        self.assertIn("WHERE resolved_at IS NULL", query)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].id, "dl-2")
        self.assertEqual(entries[0].error_type, ErrorType.HTTP_ERROR)
        self.assertEqual(entries[0].total_retries, 8)
        self.assertEqual(entries[0].status_code, 503)
        self.assertFalse(entries[0].is_resolved)

    def test_ensure_tables_creates_missing(self):
        self.bq.get_dataset.side_effect = NotFound("no dataset")
        self.bq.get_table.side_effect = NotFound("no table")
        self.client.ensure_tables_exist()

        self.bq.create_dataset.assert_called_once()
        self.assertEqual(self.bq.create_table.call_count, len(TABLE_SCHEMAS))


if __name__ == "__main__":
    unittest.main()
