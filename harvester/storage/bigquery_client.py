"""BigQuery client for the menu harvester.

Ingestion sink for batch payloads, plus the scrape-job log, the batch run
table and the persistent copy of the dead letter queue.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from google.cloud import bigquery
from google.cloud.exceptions import NotFound

from harvester.models import (
    BatchPayload,
    BatchSummary,
    DeadLetterEntry,
    ErrorType,
    Resolution,
    ScrapeJob,
)
from harvester.storage.schema import TABLE_SCHEMAS

logger = logging.getLogger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _row_to_dead_letter(row: dict[str, Any]) -> DeadLetterEntry:
    return DeadLetterEntry(
        id=row["id"],
        source=row["source"],
        error_type=ErrorType(row["error_type"]),
        error_message=row.get("error_message") or "",
        total_retries=row["total_retries"],
        first_attempt_at=row["first_attempt_at"],
        last_attempt_at=row["last_attempt_at"],
        status_code=row.get("status_code"),
        batch_id=row.get("batch_id"),
        resolution=Resolution(row["resolution"]) if row.get("resolution") else None,
        resolved_at=row.get("resolved_at"),
        resolved_by=row.get("resolved_by"),
        notes=row.get("notes"),
    )


def product_key(source_id: str, name: str) -> str:
    """Natural identity of a product: its source plus the normalized name."""
    return f"{source_id}:{name.strip().lower()}"


def payload_to_product_rows(payload: BatchPayload, scraped_at: datetime) -> list[dict[str, Any]]:
    """Flatten an ingestion payload into scraped_products rows.

    Sources with status "error" carry no items and produce no rows.
    """
    rows = []
    for result in payload.results:
        if result.status != "ok":
            continue
        for record in result.items:
            product = record.product
            inventory = record.inventory
            rows.append({
                "batch_id": payload.batch_id,
                "source_id": result.source_id,
                "product_key": product_key(result.source_id, product.name),
                "name": product.name,
                "brand": product.brand,
                "category": product.category.value,
                "subcategory": product.subcategory,
                "strain": product.strain.value if product.strain else None,
                "thc": product.thc,
                "cbd": product.cbd,
                "tac": product.tac,
                "weight_amount": product.weight.amount if product.weight else None,
                "weight_unit": product.weight.unit if product.weight else None,
                "price": product.price,
                "tags": list(product.tags),
                "parse_confidence": product.confidence,
                "product_url": record.product_url,
                "quantity": inventory.quantity if inventory else None,
                "quantity_warning": inventory.quantity_warning if inventory else None,
                "in_stock": inventory.in_stock if inventory else None,
                "inventory_source": inventory.source.value if inventory else None,
                "inventory_confidence": inventory.confidence.value if inventory else None,
                "scraped_at": scraped_at.isoformat(),
            })
    return rows


class BigQueryClient:
    """Client for all BigQuery operations in the harvester."""

    def __init__(self, project_id: str, dataset_id: str, location: str = "us-east4",
                 client: Optional[bigquery.Client] = None):
        self.project_id = project_id
        self.dataset_id = dataset_id
        self.location = location
        self.client = client or bigquery.Client(project=project_id)
        self.dataset_ref = f"{project_id}.{dataset_id}"

    def ensure_tables_exist(self) -> None:
        """Create dataset and all tables if they don't exist."""
        dataset = bigquery.Dataset(self.dataset_ref)
        dataset.location = self.location
        try:
            self.client.get_dataset(self.dataset_ref)
            logger.info("Dataset %s already exists", self.dataset_ref)
        except NotFound:
            self.client.create_dataset(dataset)
            logger.info("Created dataset %s", self.dataset_ref)

        for table_name, schema in TABLE_SCHEMAS.items():
            table_ref = f"{self.dataset_ref}.{table_name}"
            table = bigquery.Table(table_ref, schema=schema)
            try:
                self.client.get_table(table_ref)
                logger.debug("Table %s already exists", table_ref)
            except NotFound:
                self.client.create_table(table)
                logger.info("Created table %s", table_ref)

    # ── Batch inserts ──────────────────────────────────────────────

    def _insert(self, table_name: str, rows: list[dict[str, Any]],
                row_ids: Optional[list[str]] = None) -> bool:
        if not rows:
            return True
        table_ref = f"{self.dataset_ref}.{table_name}"
        errors = self.client.insert_rows_json(table_ref, rows, row_ids=row_ids)
        if errors:
            logger.error("BigQuery insert errors (%s): %s", table_name, errors)
            return False
        logger.debug("Inserted %d %s rows", len(rows), table_name)
        return True

    def ingest_batch(self, payload: BatchPayload) -> bool:
        """Write every product of a batch payload.

        Row ids are the product's natural key within the batch, so a
        resubmitted payload is de-duplicated by the streaming API.
        """
        rows = payload_to_product_rows(payload, datetime.now(timezone.utc))
        row_ids = [f"{payload.batch_id}:{row['product_key']}" for row in rows]
        ok = self._insert("scraped_products", rows, row_ids=row_ids)
        if ok:
            logger.info("Ingested %d products for batch %s", len(rows), payload.batch_id)
        return ok

    def insert_scrape_jobs_batch(self, jobs: list[ScrapeJob]) -> bool:
        rows = [
            {
                "batch_id": job.batch_id,
                "source_id": job.source_id,
                "source_url": job.source_url,
                "status": job.status.value,
                "retry_count": job.retry_count,
                "items_scraped": job.items_scraped,
                "items_failed": job.items_failed,
                "error_message": job.error_message,
                "started_at": _ts(job.started_at),
                "completed_at": _ts(job.completed_at),
            }
            for job in jobs
        ]
        return self._insert("scrape_jobs", rows)

    # ── Batch runs ─────────────────────────────────────────────────

    def insert_batch_run(self, batch_id: str, started_at: datetime, run_mode: str) -> None:
        self._insert("batch_runs", [{
            "batch_id": batch_id,
            "started_at": started_at.isoformat(),
            "run_mode": run_mode,
        }])

    def update_batch_run_completed(self, summary: BatchSummary) -> None:
        """Update the batch run row with completion counts via DML."""
        table_ref = f"{self.dataset_ref}.batch_runs"
        query = f"""
            UPDATE `{table_ref}`
            SET completed_at = @completed_at,
                succeeded = @succeeded,
                failed = @failed,
                items_scraped = @items_scraped,
                dead_lettered = @dead_lettered
            WHERE batch_id = @batch_id
        """
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter(
                    "completed_at", "TIMESTAMP", summary.completed_at or datetime.now(timezone.utc)
                ),
                bigquery.ScalarQueryParameter("succeeded", "INT64", summary.succeeded),
                bigquery.ScalarQueryParameter("failed", "INT64", summary.failed),
                bigquery.ScalarQueryParameter("items_scraped", "INT64", summary.items_scraped),
                bigquery.ScalarQueryParameter("dead_lettered", "INT64", summary.dead_lettered),
                bigquery.ScalarQueryParameter("batch_id", "STRING", summary.batch_id),
            ]
        )
        self.client.query(query, job_config=job_config).result()
        logger.info(
            "Updated batch %s: succeeded=%d, failed=%d",
            summary.batch_id, summary.succeeded, summary.failed,
        )

    # ── Dead letter queue ──────────────────────────────────────────

    def save_dead_letter(self, entry: DeadLetterEntry) -> None:
        """Upsert a dead letter entry keyed by id.

        Resolved rows are never reopened: the update only applies while the
        stored row is unresolved.
        """
        table_ref = f"{self.dataset_ref}.dead_letter_queue"
        query = f"""
            MERGE `{table_ref}` T
            USING (SELECT @id AS id) S
            ON T.id = S.id
            WHEN MATCHED AND T.resolved_at IS NULL THEN
              UPDATE SET error_type = @error_type,
                         error_message = @error_message,
                         status_code = @status_code,
                         batch_id = @batch_id,
                         total_retries = @total_retries,
                         last_attempt_at = @last_attempt_at,
                         resolution = @resolution,
                         resolved_at = @resolved_at,
                         resolved_by = @resolved_by,
                         notes = @notes
            WHEN NOT MATCHED THEN
              INSERT (id, source, error_type, error_message, status_code, batch_id,
                      total_retries, first_attempt_at, last_attempt_at,
                      resolution, resolved_at, resolved_by, notes)
              VALUES (@id, @source, @error_type, @error_message, @status_code, @batch_id,
                      @total_retries, @first_attempt_at, @last_attempt_at,
                      @resolution, @resolved_at, @resolved_by, @notes)
        """
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("id", "STRING", entry.id),
                bigquery.ScalarQueryParameter("source", "STRING", entry.source),
                bigquery.ScalarQueryParameter("error_type", "STRING", entry.error_type.value),
                bigquery.ScalarQueryParameter("error_message", "STRING", entry.error_message),
                bigquery.ScalarQueryParameter("status_code", "INT64", entry.status_code),
                bigquery.ScalarQueryParameter("batch_id", "STRING", entry.batch_id),
                bigquery.ScalarQueryParameter("total_retries", "INT64", entry.total_retries),
                bigquery.ScalarQueryParameter("first_attempt_at", "TIMESTAMP", entry.first_attempt_at),
                bigquery.ScalarQueryParameter("last_attempt_at", "TIMESTAMP", entry.last_attempt_at),
                bigquery.ScalarQueryParameter(
                    "resolution", "STRING", entry.resolution.value if entry.resolution else None
                ),
                bigquery.ScalarQueryParameter("resolved_at", "TIMESTAMP", entry.resolved_at),
                bigquery.ScalarQueryParameter("resolved_by", "STRING", entry.resolved_by),
                bigquery.ScalarQueryParameter("notes", "STRING", entry.notes),
            ]
        )
        self.client.query(query, job_config=job_config).result()
        logger.debug("Saved dead letter %s (%s)", entry.id, entry.source)

    def load_unresolved_dead_letters(self) -> list[DeadLetterEntry]:
        """Unresolved dead letter entries, most recently failed first."""
        query = f"""
            SELECT *
            FROM `{self.dataset_ref}.dead_letter_queue`
            WHERE resolved_at IS NULL
            ORDER BY last_attempt_at DESC
        """
        results = self.client.query(query).result()
        return [_row_to_dead_letter(dict(row.items())) for row in results]
