import json
import logging
import os
import tempfile
from typing import Any, Protocol

from redis.client import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

Document = dict[str, Any]


class StoreError(Exception):
    """The document backend failed to read or write."""


class DocumentStore(Protocol):
    def load(self, key: str) -> Document | None: ...

    def save(self, key: str, document: Document) -> None: ...


def _dumps(document: Document) -> str:
    return json.dumps(document, ensure_ascii=False, separators=(",", ":"))


class RedisDocumentStore:
    def __init__(self, url: str, namespace: str = "vmlifecycle") -> None:
        self.r: Redis = Redis.from_url(
            url,
            decode_responses=True,
        )
        self.ns: str = namespace.rstrip(":")

    # ---- Keys ----
    def _key(self, key: str) -> str:
        return f"{self.ns}:doc:{key}"

    def load(self, key: str) -> Document | None:
        try:
            s = self.r.get(self._key(key))
        except RedisError as e:
            raise StoreError(f"Could not load {key!r} from redis: {e}") from e
        if s is None:
            return None
        try:
            # pyrefly: ignore  # bad-argument-type
            return json.loads(s)
        except ValueError as e:
            raise StoreError(f"Corrupted document {key!r}: {e}") from e

    def save(self, key: str, document: Document) -> None:
        try:
            self.r.set(self._key(key), _dumps(document))
        except RedisError as e:
            raise StoreError(f"Could not save {key!r} to redis: {e}") from e


class JsonFileDocumentStore:
    """One ``<key>.json`` file per document, replaced atomically on save."""

    def __init__(self, directory: str) -> None:
        self.directory = directory

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def load(self, key: str) -> Document | None:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"Could not load {path}: {e}") from e

    def save(self, key: str, document: Document) -> None:
        path = self._path(key)
        tmp = None
        try:
            os.makedirs(self.directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(_dumps(document))
            os.replace(tmp, path)
        except OSError as e:
            if tmp and os.path.exists(tmp):
                os.remove(tmp)
            raise StoreError(f"Could not save {path}: {e}") from e
