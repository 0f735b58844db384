"""BigQuery table schemas for the menu harvester."""

from google.cloud.bigquery import SchemaField

SCRAPED_PRODUCTS_SCHEMA = [
    SchemaField("batch_id", "STRING", mode="REQUIRED"),
    SchemaField("source_id", "STRING", mode="REQUIRED"),
    SchemaField("product_key", "STRING", mode="REQUIRED"),
    SchemaField("name", "STRING", mode="REQUIRED"),
    SchemaField("brand", "STRING"),
    SchemaField("category", "STRING", mode="REQUIRED"),
    SchemaField("subcategory", "STRING"),
    SchemaField("strain", "STRING"),
    SchemaField("thc", "FLOAT"),
    SchemaField("cbd", "FLOAT"),
    SchemaField("tac", "FLOAT"),
    SchemaField("weight_amount", "FLOAT"),
    SchemaField("weight_unit", "STRING"),
    SchemaField("price", "FLOAT"),
    SchemaField("tags", "STRING", mode="REPEATED"),
    SchemaField("parse_confidence", "FLOAT"),
    SchemaField("product_url", "STRING"),
    SchemaField("quantity", "INTEGER"),
    SchemaField("quantity_warning", "STRING"),
    SchemaField("in_stock", "BOOLEAN"),
    SchemaField("inventory_source", "STRING"),
    SchemaField("inventory_confidence", "STRING"),
    SchemaField("scraped_at", "TIMESTAMP", mode="REQUIRED"),
]

SCRAPE_JOBS_SCHEMA = [
    SchemaField("batch_id", "STRING", mode="REQUIRED"),
    SchemaField("source_id", "STRING", mode="REQUIRED"),
    SchemaField("source_url", "STRING", mode="REQUIRED"),
    SchemaField("status", "STRING", mode="REQUIRED"),
    SchemaField("retry_count", "INTEGER"),
    SchemaField("items_scraped", "INTEGER"),
    SchemaField("items_failed", "INTEGER"),
    SchemaField("error_message", "STRING"),
    SchemaField("started_at", "TIMESTAMP"),
    SchemaField("completed_at", "TIMESTAMP"),
]

DEAD_LETTER_QUEUE_SCHEMA = [
    SchemaField("id", "STRING", mode="REQUIRED"),
    SchemaField("source", "STRING", mode="REQUIRED"),
    SchemaField("error_type", "STRING", mode="REQUIRED"),
    SchemaField("error_message", "STRING"),
    SchemaField("status_code", "INTEGER"),
    SchemaField("batch_id", "STRING"),
    SchemaField("total_retries", "INTEGER", mode="REQUIRED"),
    SchemaField("first_attempt_at", "TIMESTAMP", mode="REQUIRED"),
    SchemaField("last_attempt_at", "TIMESTAMP", mode="REQUIRED"),
    SchemaField("resolution", "STRING"),
    SchemaField("resolved_at", "TIMESTAMP"),
    SchemaField("resolved_by", "STRING"),
    SchemaField("notes", "STRING"),
]

BATCH_RUNS_SCHEMA = [
    SchemaField("batch_id", "STRING", mode="REQUIRED"),
    SchemaField("started_at", "TIMESTAMP", mode="REQUIRED"),
    SchemaField("completed_at", "TIMESTAMP"),
    SchemaField("run_mode", "STRING"),
    SchemaField("succeeded", "INTEGER"),
    SchemaField("failed", "INTEGER"),
    SchemaField("items_scraped", "INTEGER"),
    SchemaField("dead_lettered", "INTEGER"),
]

TABLE_SCHEMAS = {
    "scraped_products": SCRAPED_PRODUCTS_SCHEMA,
    "scrape_jobs": SCRAPE_JOBS_SCHEMA,
    "dead_letter_queue": DEAD_LETTER_QUEUE_SCHEMA,
    "batch_runs": BATCH_RUNS_SCHEMA,
}
