"""
Redis-backed error store.

Records are stored as:
- Record snapshots in hashes (JSON "data" field plus mutable counters)
- Creation-ordered sorted sets, globally and per application
- A rollup index per error hash that expires after the rollup window

Redis errors are translated to StoreFailure so the caller can switch to
the backup queue.
"""

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional

import redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from errorlog.models.error import ErrorRecord, ensure_utc, utcnow
from stores.base import StoreContract, StoreFailure, StoreSettings, is_health_check


logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class RedisStore(StoreContract):
    """
    Error store persisting records to Redis.

    The rollup window is implemented with an expiring key per error hash,
    so a record can only collect duplicates while that key is alive.
    """

    # Redis key templates
    ERROR_KEY = "{prefix}:error:{error_id}"
    INDEX_KEY = "{prefix}:errors"
    APP_INDEX_KEY = "{prefix}:app:{application_name}:errors"
    ROLLUP_KEY = "{prefix}:rollup:{error_hash}"

    def __init__(
        self,
        settings: Optional[StoreSettings] = None,
        client: Optional[redis.Redis] = None,
        key_prefix: str = "errorlog",
        max_retries: int = 1,
        retry_delay: float = 0.1,
        connection_timeout: int = 5
    ):
        """
        Initialize Redis store.

        Args:
            settings: Store settings; ``connection_string`` is the Redis URL
            client: Pre-built Redis client (used by tests)
            key_prefix: Prefix for every key written by this store
            max_retries: Attempts per operation on connection/timeout errors
            retry_delay: Base delay between attempts (exponential backoff)
            connection_timeout: Socket timeout in seconds
        """
        super().__init__(settings)
        self.size = self.settings.size
        self._prefix = key_prefix
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay

        if client is None:
            client = redis.Redis.from_url(
                self.settings.connection_string or DEFAULT_REDIS_URL,
                decode_responses=True,
                socket_timeout=connection_timeout,
                socket_connect_timeout=connection_timeout
            )
        self._client = client

    def close(self) -> None:
        """Close the underlying connection pool."""
        self._client.close()
        logger.info("Redis store connection closed")

    def _run(self, operation: Callable[[redis.Redis], Any]) -> Any:
        """
        Execute a Redis operation, translating failures to StoreFailure.

        Connection and timeout errors are retried with exponential backoff
        up to ``max_retries`` attempts; other Redis errors are not retried.
        """
        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                return operation(self._client)

            except (ConnectionError, TimeoutError) as e:
                last_error = e
                if attempt < self._max_retries - 1:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Redis operation failed (attempt {attempt + 1}/{self._max_retries}), "
                        f"retrying in {delay}s: {e}"
                    )
                    time.sleep(delay)

            except RedisError as e:
                logger.error(f"Redis operation failed with non-transient error: {e}")
                raise StoreFailure(f"Redis operation failed: {e}") from e

        raise StoreFailure(
            f"Redis operation failed after {self._max_retries} attempts: {last_error}"
        ) from last_error

    # ========== Keys ==========

    def _error_key(self, error_id: Any) -> str:
        return self.ERROR_KEY.format(prefix=self._prefix, error_id=error_id)

    def _index_key(self, application_name: Optional[str] = None) -> str:
        if application_name is None:
            return self.INDEX_KEY.format(prefix=self._prefix)
        return self.APP_INDEX_KEY.format(
            prefix=self._prefix, application_name=application_name
        )

    def _rollup_key(self, error_hash: str) -> str:
        return self.ROLLUP_KEY.format(prefix=self._prefix, error_hash=error_hash)

    # ========== Serialization ==========

    def _load(self, client: redis.Redis, error_id: Any) -> Optional[ErrorRecord]:
        fields = client.hgetall(self._error_key(error_id))
        if not fields or "data" not in fields:
            return None

        record = ErrorRecord.model_validate_json(fields["data"])
        record.duplicate_count = int(fields.get("duplicate_count", record.duplicate_count))
        record.is_protected = fields.get("is_protected") == "1"
        if fields.get("last_log_date"):
            record.last_log_date = datetime.fromisoformat(fields["last_log_date"])
        return record

    def _save(self, client: redis.Redis, record: ErrorRecord) -> None:
        """
        Store a new record and index it.

        The duplicate count is added with HINCRBY so that rollups which
        raced in after the rollup key was claimed are kept. Health-check
        records are not indexed, so they are never listed, counted or
        trimmed against.
        """
        error_id = str(record.id)
        error_key = self._error_key(error_id)
        mapping = {
            "data": record.model_dump_json(),
            "is_protected": "1" if record.is_protected else "0",
        }
        if record.last_log_date is not None:
            mapping["last_log_date"] = record.last_log_date.isoformat()

        pipe = client.pipeline()
        pipe.hset(error_key, mapping=mapping)
        pipe.hincrby(error_key, "duplicate_count", record.duplicate_count)
        if not is_health_check(record):
            score = record.creation_date.timestamp()
            pipe.zadd(self._index_key(), {error_id: score})
            if record.application_name is not None:
                pipe.zadd(self._index_key(record.application_name), {error_id: score})
        pipe.execute()

    def _remove(self, client: redis.Redis, record: ErrorRecord) -> None:
        error_id = str(record.id)
        pipe = client.pipeline()
        pipe.delete(self._error_key(error_id))
        pipe.zrem(self._index_key(), error_id)
        if record.application_name is not None:
            pipe.zrem(self._index_key(record.application_name), error_id)
        pipe.execute()

        rollup_key = self._rollup_key(record.error_hash)
        if client.get(rollup_key) == error_id:
            client.delete(rollup_key)

    # ========== Store operations ==========

    def write(self, record: ErrorRecord) -> uuid.UUID:
        def _write(client: redis.Redis) -> uuid.UUID:
            error_id = str(record.id)

            if self.rollup_threshold is not None:
                rollup_key = self._rollup_key(record.error_hash)
                ttl = int(self.rollup_threshold.total_seconds())

                # Only the writer that claims the hash creates a record
                if not client.set(rollup_key, error_id, nx=True, ex=ttl):
                    existing_id = client.get(rollup_key)
                    if existing_id == error_id:
                        # Retry of a write that claimed the hash and then failed
                        if client.hexists(self._error_key(error_id), "data"):
                            return record.id
                    elif existing_id is not None:
                        rolled_up = self._roll_up(client, existing_id, record)
                        if rolled_up is not None:
                            return rolled_up
                    client.set(rollup_key, error_id, ex=ttl)

            self._save(client, record)
            if not is_health_check(record):
                self._trim(client)
            return record.id

        return self._run(_write)

    def _roll_up(
        self,
        client: redis.Redis,
        existing_id: str,
        record: ErrorRecord
    ) -> Optional[uuid.UUID]:
        """Add a record to the one holding the rollup key, unless that one is protected."""
        error_key = self._error_key(existing_id)
        # The claiming writer may not have saved yet; its HINCRBY adds to ours
        if client.hget(error_key, "is_protected") == "1":
            return None

        count = client.hincrby(error_key, "duplicate_count", record.duplicate_count)
        client.hset(error_key, "last_log_date", utcnow().isoformat())
        logger.debug(f"Rolled up error {record.id} into {existing_id} (count={count})")
        return uuid.UUID(existing_id)

    def _trim(self, client: redis.Redis) -> None:
        overflow = client.zcard(self._index_key()) - self.size
        if overflow <= 0:
            return

        # Oldest non-protected records go first
        for error_id in client.zrange(self._index_key(), 0, -1):
            if overflow <= 0:
                break
            record = self._load(client, error_id)
            if record is None:
                client.zrem(self._index_key(), error_id)
                overflow -= 1
            elif not record.is_protected:
                self._remove(client, record)
                overflow -= 1

    def fetch(self, error_id: uuid.UUID) -> Optional[ErrorRecord]:
        return self._run(lambda client: self._load(client, error_id))

    def protect(self, error_id: uuid.UUID) -> bool:
        def _protect(client: redis.Redis) -> bool:
            key = self._error_key(error_id)
            if not client.exists(key):
                return False
            client.hset(key, "is_protected", "1")
            return True

        return self._run(_protect)

    def delete(self, error_id: uuid.UUID) -> bool:
        def _delete(client: redis.Redis) -> bool:
            record = self._load(client, error_id)
            if record is None or record.is_protected:
                return False
            self._remove(client, record)
            return True

        return self._run(_delete)

    def hard_delete(self, error_id: uuid.UUID) -> bool:
        def _hard_delete(client: redis.Redis) -> bool:
            record = self._load(client, error_id)
            if record is None:
                return False
            self._remove(client, record)
            return True

        return self._run(_hard_delete)

    def delete_all(self, application_name: Optional[str] = None) -> bool:
        def _delete_all(client: redis.Redis) -> bool:
            for error_id in client.zrange(self._index_key(application_name), 0, -1):
                record = self._load(client, error_id)
                if record is not None and not record.is_protected:
                    self._remove(client, record)
            return True

        return self._run(_delete_all)

    def list_all(self, application_name: Optional[str] = None) -> List[ErrorRecord]:
        def _list_all(client: redis.Redis) -> List[ErrorRecord]:
            records = []
            for error_id in client.zrevrange(self._index_key(application_name), 0, -1):
                record = self._load(client, error_id)
                if record is not None:
                    records.append(record)
            return records

        return self._run(_list_all)

    def count(
        self,
        since: Optional[datetime] = None,
        application_name: Optional[str] = None
    ) -> int:
        since = ensure_utc(since)
        minimum = since.timestamp() if since is not None else "-inf"
        return self._run(
            lambda client: client.zcount(self._index_key(application_name), minimum, "+inf")
        )
