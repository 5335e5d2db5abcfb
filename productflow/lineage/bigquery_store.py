"""
BigQuery lineage store.

Edges are written with a parameterized MERGE keyed on the
(producer, consumer, asset) triple, so repeated writes never duplicate.

Usage:
    from google.cloud import bigquery

    client = bigquery.Client(project="acme-data")
    store = BigQueryLineageStore(client, "acme-data.lineage.lineage_edges")
    store.ensure_table()
    store.upsert_lineage_edge("task:weather/download", "asset:raw", "raw")
"""

import logging

from google.cloud import bigquery

logger = logging.getLogger(__name__)

LINEAGE_SCHEMA = [
    bigquery.SchemaField("producer", "STRING", mode="REQUIRED"),
    bigquery.SchemaField("consumer", "STRING", mode="REQUIRED"),
    bigquery.SchemaField("asset", "STRING", mode="REQUIRED"),
    bigquery.SchemaField("recorded_at", "TIMESTAMP", mode="REQUIRED"),
]


class BigQueryLineageStore:
    """
    LineageStore backed by a BigQuery table.

    Args:
        bq_client: google.cloud.bigquery.Client instance
        table_ref: Fully-qualified table id (project.dataset.table)
    """

    def __init__(self, bq_client: "bigquery.Client", table_ref: str):
        self.bq_client = bq_client
        self.table_ref = table_ref

    def ensure_table(self) -> None:
        """Create the lineage table if it does not exist."""
        table = bigquery.Table(self.table_ref, schema=LINEAGE_SCHEMA)
        self.bq_client.create_table(table, exists_ok=True)

    def upsert_lineage_edge(self, producer: str, consumer: str, asset: str) -> bool:
        merge_query = f"""
            MERGE `{self.table_ref}` AS target
            USING (SELECT @producer AS producer, @consumer AS consumer, @asset AS asset) AS source
            ON target.producer = source.producer
                AND target.consumer = source.consumer
                AND target.asset = source.asset
            WHEN NOT MATCHED THEN
                INSERT (producer, consumer, asset, recorded_at)
                VALUES (source.producer, source.consumer, source.asset, CURRENT_TIMESTAMP())
        """
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("producer", "STRING", producer),
                bigquery.ScalarQueryParameter("consumer", "STRING", consumer),
                bigquery.ScalarQueryParameter("asset", "STRING", asset),
            ]
        )

        merge_job = self.bq_client.query(merge_query, job_config=job_config)
        merge_job.result()

        affected = getattr(merge_job, "num_dml_affected_rows", None) or 0
        logger.debug(f"Lineage edge {producer} -> {consumer} ({asset}): {affected} row(s) inserted")
        return affected > 0
