import json
import logging
import re
import uuid
from typing import Any, Protocol

import requests
from redis.exceptions import RedisError

from json_chat.app.config import SCHEMA_CACHE_NAMESPACE, ChatSettings
from json_chat.infrastructure.redis_manager import RedisManager, build_redis_manager

_TIMEOUT = 15
DRAFT_06 = "http://json-schema.org/draft-06/schema#"
_DATE_TIME = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$")
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class SchemaInferenceError(RuntimeError):
    """The schema service could not describe the document."""


class SchemaInferrer(Protocol):
    def infer(self, json_text: str) -> str: ...


def _compact(schema: Any) -> str:
    return json.dumps(schema, separators=(",", ":"), ensure_ascii=False)


def _variants(schema: dict[str, Any]) -> list[dict[str, Any]]:
    if "anyOf" in schema:
        return list(schema["anyOf"])
    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        return [{"type": t} for t in schema_type]
    return [schema]


class LocalSchemaInferrer:
    """
    Infer a draft-06 JSON Schema from a sample document.

    Array items are merged into one schema; an object key is required only if
    every sampled object has it; integers widen to numbers when mixed; values
    of different kinds become a type list or `anyOf`.
    """

    MAX_ARRAY_SAMPLE = 500
    MAX_DEPTH = 64

    def infer(self, json_text: str) -> str:
        value = json.loads(json_text)
        schema = {"$schema": DRAFT_06, "title": "Root", **self._schema_for(value, 0)}
        return _compact(schema)

    def _schema_for(self, node: Any, depth: int) -> dict[str, Any]:
        if depth > self.MAX_DEPTH:
            return {}
        if node is None:
            return {"type": "null"}
        if isinstance(node, bool):
            return {"type": "boolean"}
        if isinstance(node, int):
            return {"type": "integer"}
        if isinstance(node, float):
            return {"type": "number"}
        if isinstance(node, str):
            if _DATE_TIME.match(node):
                return {"type": "string", "format": "date-time"}
            if _DATE.match(node):
                return {"type": "string", "format": "date"}
            return {"type": "string"}
        if isinstance(node, dict):
            return {
                "type": "object",
                "properties": {k: self._schema_for(v, depth + 1) for k, v in node.items()},
                "required": sorted(node),
            }
        if isinstance(node, list):
            items: dict[str, Any] = {}
            for item in node[: self.MAX_ARRAY_SAMPLE]:
                items = self._merge(items, self._schema_for(item, depth + 1))
            return {"type": "array", "items": items}
        return {}

    def _merge(self, a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
        if not a:
            return b
        if not b:
            return a

        by_type: dict[str, dict[str, Any]] = {}
        for variant in _variants(a) + _variants(b):
            variant_type = variant.get("type", "")
            existing = by_type.get(variant_type)
            by_type[variant_type] = variant if existing is None else self._merge_same(existing, variant)

        if "integer" in by_type and "number" in by_type:
            del by_type["integer"]

        variants = list(by_type.values())
        if len(variants) == 1:
            return variants[0]
        if all(set(v) == {"type"} for v in variants):
            return {"type": [v["type"] for v in variants]}
        return {"anyOf": variants}

    def _merge_same(self, a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
        schema_type = a.get("type")
        if schema_type == "object":
            properties = dict(a["properties"])
            for key, value in b["properties"].items():
                properties[key] = self._merge(properties[key], value) if key in properties else value
            required = sorted(set(a["required"]) & set(b["required"]))
            return {"type": "object", "properties": properties, "required": required}
        if schema_type == "array":
            return {"type": "array", "items": self._merge(a["items"], b["items"])}
        if schema_type == "string" and a.get("format") != b.get("format"):
            return {"type": "string"}
        return a


class RemoteSchemaInferrer:
    """Ask an external schema service; the document text is POSTed unmodified."""

    def __init__(self, url: str, session: requests.Session | None = None) -> None:
        self.url = url
        self.session = session or requests.Session()

    def infer(self, json_text: str) -> str:
        headers = {
            "X-Request-ID": str(uuid.uuid4()),
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.post(
                self.url, data=json_text.encode("utf-8"), headers=headers, timeout=_TIMEOUT
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SchemaInferenceError(f"Schema service request failed ({self.url}): {e}") from e

        try:
            return _compact(resp.json())
        except ValueError as e:
            ctype = resp.headers.get("content-type", "")
            raise SchemaInferenceError(f"Schema service returned non-JSON content ({ctype})") from e


class SchemaService:
    """
    Front for the schema inferrer with an optional Redis cache keyed by document digest.

    Cache failures are logged and never block inference.
    """

    def __init__(
        self,
        inferrer: SchemaInferrer,
        cache: RedisManager | None = None,
        ttl: int | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.inferrer = inferrer
        self.cache = cache
        self.ttl = ttl
        self.logger = logger or logging.getLogger("json-chat")

    def infer(self, json_text: str, digest: str | None = None) -> str:
        key = self.cache.key(digest) if self.cache and digest else None

        if self.cache and key:
            try:
                cached = self.cache.get_json(key)
            except RedisError as e:
                self.logger.warning(f"Schema cache read failed: {e}")
                cached = None
            if cached and isinstance(cached.get("schema"), str):
                self.logger.info(f"Schema served from cache ({digest})")
                return cached["schema"]

        try:
            schema = self.inferrer.infer(json_text)
        except SchemaInferenceError:
            raise
        except Exception as e:
            raise SchemaInferenceError(f"Schema inference failed: {e}") from e

        if self.cache and key:
            try:
                self.cache.set_json(key, {"schema": schema}, ttl=self.ttl)
            except RedisError as e:
                self.logger.warning(f"Schema cache write failed: {e}")
        return schema


def build_schema_service(settings: ChatSettings, logger: logging.Logger | None = None) -> SchemaService:
    """Pick the remote or local inferrer and attach the Redis cache when configured."""
    inferrer: SchemaInferrer
    if settings.schema_inferrer_url:
        inferrer = RemoteSchemaInferrer(settings.schema_inferrer_url)
    else:
        inferrer = LocalSchemaInferrer()

    cache = None
    if settings.redis_url:
        cache = build_redis_manager(settings.redis_url, namespace=SCHEMA_CACHE_NAMESPACE)

    return SchemaService(inferrer, cache=cache, ttl=settings.schema_cache_ttl, logger=logger)
