"""
Metadata Offset Store
=====================

Delegates offsets to a generic key/value metadata service that the
hosting platform already runs (the same store other components use for
their own bookkeeping).

Keys are "<namespace>:<partition>" and values are JSON positions. A
"<namespace>:keys" entry lists every stored partition so all offsets can
be loaded on start.

Metadata service clients:
- SimpleMetadataStore: in-process dict
- PostgresMetadataStore: table in PostgreSQL (psycopg2)
- MinIOMetadataStore: one object per key in a MinIO bucket
"""

import io
import json
import logging
import threading
from typing import Any, Dict, Optional

import psycopg2
from psycopg2 import sql
from minio import Minio
from minio.error import S3Error

from ..errors import OffsetStoreError
from .base import OffsetStore, dump_position, load_position

logger = logging.getLogger(__name__)


class MetadataStore:
    """Minimal key/value contract of a metadata service."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, value: str):
        raise NotImplementedError

    def remove(self, key: str):
        raise NotImplementedError

    def close(self):
        pass


class SimpleMetadataStore(MetadataStore):
    """Metadata store kept in a dict (tests and single-process setups)."""

    def __init__(self, data: Optional[Dict[str, str]] = None):
        self._data = dict(data or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str):
        with self._lock:
            self._data[key] = value

    def remove(self, key: str):
        with self._lock:
            self._data.pop(key, None)


class PostgresMetadataStore(MetadataStore):
    """
    Metadata store in a PostgreSQL table.

    Args:
        postgres_config: psycopg2.connect() keyword arguments
        table: Table name
        region: Logical partition of the table, lets several apps share it
    """

    def __init__(self, postgres_config: Dict, table: str = "capture_metadata_store", region: str = "DEFAULT"):
        self.postgres_config = postgres_config
        self.table = table
        self.region = region
        self._db_conn = None
        self._lock = threading.Lock()

    @property
    def db_conn(self):
        if self._db_conn is None or self._db_conn.closed:
            self._db_conn = psycopg2.connect(**self.postgres_config)
            self._ensure_table()
        return self._db_conn

    def _ensure_table(self):
        with self._db_conn.cursor() as cur:
            cur.execute(sql.SQL("""
                CREATE TABLE IF NOT EXISTS {} (
                    metadata_key VARCHAR(255) NOT NULL,
                    metadata_value TEXT,
                    region VARCHAR(100) NOT NULL,
                    PRIMARY KEY (metadata_key, region)
                )
            """).format(sql.Identifier(self.table)))
        self._db_conn.commit()

    def _execute(self, query, params, fetch: bool = False):
        with self._lock:
            conn = self.db_conn
            try:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    row = cur.fetchone() if fetch else None
                conn.commit()
                return row
            except psycopg2.Error:
                conn.rollback()
                raise

    def get(self, key: str) -> Optional[str]:
        query = sql.SQL("SELECT metadata_value FROM {} WHERE metadata_key = %s AND region = %s").format(
            sql.Identifier(self.table)
        )
        row = self._execute(query, (key, self.region), fetch=True)
        return row[0] if row else None

    def put(self, key: str, value: str):
        query = sql.SQL("""
            INSERT INTO {} (metadata_key, metadata_value, region)
            VALUES (%s, %s, %s)
            ON CONFLICT (metadata_key, region) DO UPDATE SET metadata_value = EXCLUDED.metadata_value
        """).format(sql.Identifier(self.table))
        self._execute(query, (key, value, self.region))

    def remove(self, key: str):
        query = sql.SQL("DELETE FROM {} WHERE metadata_key = %s AND region = %s").format(
            sql.Identifier(self.table)
        )
        self._execute(query, (key, self.region))

    def close(self):
        if self._db_conn is not None and not self._db_conn.closed:
            self._db_conn.close()


class MinIOMetadataStore(MetadataStore):
    """
    Metadata store in a MinIO bucket, one small text object per key.

    Args:
        config: Connection dict with endpoint, access_key, secret_key, bucket
        prefix: Object name prefix
    """

    def __init__(self, config: Dict, prefix: str = "capture/metadata"):
        self.config = config
        self.bucket = config.get("bucket", "capture-metadata")
        self.prefix = prefix.strip("/")
        self.client = None

    def connect(self):
        """Establish connection to MinIO and ensure the bucket exists."""
        self.client = Minio(
            endpoint=self.config["endpoint"],
            access_key=self.config["access_key"],
            secret_key=self.config["secret_key"],
            secure=self.config.get("secure", False),
        )
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")
        logger.info(f"Connected to MinIO: {self.config['endpoint']}, bucket: {self.bucket}")

    def _object_name(self, key: str) -> str:
        return f"{self.prefix}/{key}"

    def get(self, key: str) -> Optional[str]:
        if self.client is None:
            self.connect()
        try:
            response = self.client.get_object(self.bucket, self._object_name(key))
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject"):
                return None
            raise
        try:
            return response.read().decode("utf-8")
        finally:
            response.close()
            response.release_conn()

    def put(self, key: str, value: str):
        if self.client is None:
            self.connect()
        data = value.encode("utf-8")
        self.client.put_object(
            bucket_name=self.bucket,
            object_name=self._object_name(key),
            data=io.BytesIO(data),
            length=len(data),
            content_type="application/json",
        )

    def remove(self, key: str):
        if self.client is None:
            self.connect()
        self.client.remove_object(self.bucket, self._object_name(key))


class MetadataOffsetStore(OffsetStore):
    """
    Offset store delegating to a MetadataStore.

    set() upserts straight into the metadata service; flush() writes the
    partition index when new partitions appeared.

    Args:
        metadata_store: Key/value service client
        namespace: Key prefix, usually the connector name
    """

    name = "metadata"

    def __init__(self, metadata_store: MetadataStore, namespace: str = "offsets"):
        super().__init__()
        self.metadata_store = metadata_store
        self.namespace = namespace
        self._indexed = set()
        self._index_dirty = False

    def _key(self, partition: str) -> str:
        return f"{self.namespace}:{partition}"

    @property
    def _index_key(self) -> str:
        return f"{self.namespace}:keys"

    def start(self):
        try:
            raw_index = self.metadata_store.get(self._index_key)
            partitions = json.loads(raw_index) if raw_index else []
            loaded = {}
            for partition in partitions:
                position = load_position(self.metadata_store.get(self._key(partition)))
                if position is not None:
                    loaded[partition] = position
        except OffsetStoreError:
            raise
        except Exception as e:
            raise OffsetStoreError(f"Failed to load offsets from metadata store: {e}", {"namespace": self.namespace}) from e
        with self._lock:
            self._data.update(loaded)
            self._indexed = set(partitions)
        logger.info(f"Loaded {len(loaded)} offset(s) from metadata store namespace {self.namespace}")

    def get(self, partition: str) -> Optional[Any]:
        with self._lock:
            if partition in self._data:
                return self._data[partition]
        try:
            position = load_position(self.metadata_store.get(self._key(partition)))
        except OffsetStoreError:
            raise
        except Exception as e:
            raise OffsetStoreError(f"Failed to read offset: {e}", {"partition": partition}) from e
        if position is not None:
            with self._lock:
                self._data[partition] = position
        return position

    def set(self, partition: str, position: Any):
        payload = dump_position(position)
        try:
            self.metadata_store.put(self._key(partition), payload)
        except Exception as e:
            raise OffsetStoreError(f"Failed to write offset: {e}", {"partition": partition}) from e
        with self._lock:
            self._data[partition] = position
            if partition not in self._indexed:
                self._indexed.add(partition)
                self._index_dirty = True

    def flush(self):
        with self._lock:
            if not self._index_dirty:
                return
            index = json.dumps(sorted(self._indexed))
        try:
            self.metadata_store.put(self._index_key, index)
        except Exception as e:
            raise OffsetStoreError(f"Failed to write offset index: {e}", {"namespace": self.namespace}) from e
        with self._lock:
            self._index_dirty = False

    def close(self):
        self.metadata_store.close()

    def __repr__(self) -> str:
        return f"MetadataOffsetStore(namespace={self.namespace!r}, store={type(self.metadata_store).__name__})"
