"""
ingestion/storage_client.py
===========================
Thin boto3 wrapper over the S3-compatible bucket that holds the log batches.

No retry or consistency logic lives here: botocore's own transport retries
are the only ones applied, and every error is re-raised to the caller after
being logged. Decompression is the file processor's job, so `get_content`
returns the raw (gzipped) object body.
"""

import logging
from datetime import datetime
from typing import Optional

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)

BATCH_SUFFIX = ".json.gz"


class ObjectStoreClient:
    def __init__(self, s3_client):
        self._s3 = s3_client

    @classmethod
    def from_settings(cls, settings) -> "ObjectStoreClient":
        """
        Build a client from Settings. A custom endpoint (LocalStack, MinIO)
        switches to path-style addressing.
        """
        config = Config(
            retries={"max_attempts": 3, "mode": "standard"},
            connect_timeout=5,
            read_timeout=30,
            s3={"addressing_style": "path"} if settings.aws_endpoint else None,
        )
        client = boto3.client(
            "s3",
            region_name=settings.aws_region,
            endpoint_url=settings.aws_endpoint,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            config=config,
        )
        logger.info(
            "S3 client initialised (region=%s, endpoint=%s).",
            settings.aws_region, settings.aws_endpoint or "default",
        )
        return cls(client)

    def list_keys(self, bucket: str, prefix: Optional[str] = None) -> list[str]:
        """Every key under `prefix` that ends in .json.gz, across all pages."""
        kwargs = {"Bucket": bucket}
        if prefix:
            kwargs["Prefix"] = prefix

        keys = []
        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(**kwargs):
                for obj in page.get("Contents", []):
                    key = obj.get("Key", "")
                    if key.endswith(BATCH_SUFFIX):
                        keys.append(key)
        except Exception as exc:
            logger.error("Error listing s3://%s/%s: %s", bucket, prefix or "", exc)
            raise
        return keys

    def get_content(self, bucket: str, key: str) -> bytes:
        logger.debug("Fetching s3://%s/%s", bucket, key)
        try:
            response = self._s3.get_object(Bucket=bucket, Key=key)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()
        except Exception as exc:
            logger.error("Error fetching s3://%s/%s: %s", bucket, key, exc)
            raise

    def get_details(self, bucket: str, key: str) -> dict:
        """HEAD the object: {"size": int, "lastModified": datetime | None}."""
        try:
            response = self._s3.head_object(Bucket=bucket, Key=key)
        except Exception as exc:
            logger.error("Error reading metadata for s3://%s/%s: %s", bucket, key, exc)
            raise
        last_modified: Optional[datetime] = response.get("LastModified")
        return {
            "size": int(response.get("ContentLength") or 0),
            "lastModified": last_modified,
        }

    def get_size(self, bucket: str, key: str) -> int:
        return self.get_details(bucket, key)["size"]
