"""
Response cache for validated AI output.

Keys are deterministic: the same task, normalized context and generation
options always map to the same key. Invalidation either deletes matching keys
(stores that can enumerate them) or bumps a version counter that is part of
every key, which orphans the old entries until their TTL runs out.
"""

import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional

from clinical_ai_guard.config.loader import ConfigSource
from clinical_ai_guard.storage.models import CacheEntry
from clinical_ai_guard.storage.store import KeyValueStore
from .clock import Clock

logger = logging.getLogger(__name__)

CACHE_PREFIX = "ai_response:"
# Kept outside CACHE_PREFIX so pattern deletes never remove the counters
VERSION_PREFIX = "ai_cache_version:"


class ResponseCache:
    """Caches successful, unmodified AI responses per task."""

    def __init__(
        self,
        store: KeyValueStore,
        config_source: Optional[ConfigSource] = None,
        clock: Clock = time.time,
    ):
        self._store = store
        self._config_source = config_source or ConfigSource()
        self._clock = clock

    @property
    def _config(self):
        return self._config_source.current.cache

    def is_cacheable(self, task: str) -> bool:
        return task not in self._config.non_cacheable_tasks

    def get(
        self,
        task: str,
        context: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the cached response for an equivalent request, or None.

        Non-cacheable tasks return None without touching the store.
        """
        if not self.is_cacheable(task):
            return None

        cache_key = self.generate_key(task, context, options)
        cached = self._store.get(cache_key)

        if cached:
            logger.debug(
                "AI cache hit: task=%s key=%s age=%.0fs",
                task, cache_key, self._clock() - cached.get("cached_at", self._clock()),
            )
            return cached

        logger.debug("AI cache miss: task=%s key=%s", task, cache_key)
        return None

    def put(
        self,
        task: str,
        context: Dict[str, Any],
        response: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Store a response under its deterministic key.

        Returns:
            False for non-cacheable tasks, failed responses and responses the
            validator modified; True once stored
        """
        if not self.is_cacheable(task):
            return False

        if response.get("success") is False:
            return False

        if (response.get("metadata") or {}).get("was_modified"):
            logger.debug("Not caching modified response: task=%s", task)
            return False

        cache_key = self.generate_key(task, context, options)
        ttl = self.get_ttl(task)
        entry = CacheEntry(
            response=response,
            task=task,
            cache_key=cache_key,
            cached_at=self._clock(),
            cache_ttl=ttl,
        )
        self._store.put(cache_key, entry.to_payload(), ttl)

        logger.debug("AI response cached: task=%s key=%s ttl=%ds", task, cache_key, ttl)
        return True

    def invalidate_patient(self, patient_id: Any) -> int:
        """Invalidate every cached response tied to a patient.

        Returns:
            Number of entries deleted when the store can enumerate keys,
            otherwise 1 to signal that a version bump was scheduled
        """
        patient_id = str(patient_id)
        if self._store.supports_patterns:
            deleted = self._delete_matching(f"{CACHE_PREFIX}*:patient:{patient_id}")
            logger.info("Patient AI cache invalidated: patient_id=%s keys=%d", patient_id, deleted)
            return deleted

        version = self._bump_version("patient", patient_id)
        logger.info("Patient AI cache version incremented: patient_id=%s version=%d", patient_id, version)
        return 1

    def invalidate_task(self, task: str) -> int:
        """Invalidate every cached response for a task.

        Same return semantics as ``invalidate_patient``.
        """
        if self._store.supports_patterns:
            deleted = self._delete_matching(f"{CACHE_PREFIX}{task}:*")
            logger.info("Task AI cache invalidated: task=%s keys=%d", task, deleted)
            return deleted

        version = self._bump_version("task", task)
        logger.info("Task AI cache version incremented: task=%s version=%d", task, version)
        return 1

    def clear_all(self) -> bool:
        """Drop every cached response.

        Stores without key enumeration get a new cache generation instead,
        which no existing key carries.
        """
        if self._store.supports_patterns:
            deleted = self._delete_matching(f"{CACHE_PREFIX}*")
            logger.warning("All AI cache cleared: keys=%d", deleted)
            return True

        generation = self._bump_version("generation", "all")
        logger.warning("All AI cache cleared: generation=%d", generation)
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Cache policy and, where the store can enumerate keys, key counts."""
        config = self._config
        stats: Dict[str, Any] = {
            "backend": type(self._store).__name__,
            "prefix": CACHE_PREFIX,
            "default_ttl": config.default_ttl,
            "task_ttls": dict(config.task_ttls),
            "non_cacheable_tasks": list(config.non_cacheable_tasks),
            "supports_patterns": self._store.supports_patterns,
        }

        if self._store.supports_patterns:
            keys = self._store.keys_matching(f"{CACHE_PREFIX}*")
            keys_by_task: Dict[str, int] = {}
            for key in keys:
                task = key[len(CACHE_PREFIX):].split(":", 1)[0]
                keys_by_task[task] = keys_by_task.get(task, 0) + 1
            stats["total_keys"] = len(keys)
            stats["keys_by_task"] = keys_by_task

        return stats

    def generate_key(
        self,
        task: str,
        context: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Deterministic cache key for a request.

        Args:
            task: Task identifier
            context: Request context; volatile fields are ignored
            options: Generation options (``model``, ``temperature``)

        Returns:
            Key of the form
            ``ai_response:<task>:v<n>:p<n>:pv<prompt>:m<model>:t<temp>:g<n>:h<md5>[:patient:<id>]``
        """
        config = self._config
        options = options or {}

        patient_id = context.get("patient_id") or context.get("patientId")
        patient_version = self._version("patient", str(patient_id)) if patient_id else 0
        task_version = self._version("task", task)
        generation = self._version("generation", "all")

        prompt_version = context.get("prompt_version", "default")
        model = options.get("model") or config.default_model
        temperature = options.get("temperature", config.default_temperature)

        normalized = self.normalize_context(context)
        context_hash = hashlib.md5(
            json.dumps(normalized, sort_keys=True, default=str).encode()
        ).hexdigest()

        parts = [
            f"{CACHE_PREFIX}{task}",
            f"v{task_version}",
            f"p{patient_version}",
            f"pv{prompt_version}",
            f"m{model}",
            f"t{temperature}",
            f"g{generation}",
            f"h{context_hash}",
        ]
        if patient_id:
            parts.append(f"patient:{patient_id}")

        return ":".join(parts)

    def normalize_context(self, context: Dict[str, Any]) -> Dict[str, Any]:
        """Drop volatile fields and order keys for stable hashing."""
        volatile = set(self._config.volatile_fields)
        return {key: context[key] for key in sorted(context) if key not in volatile}

    def get_ttl(self, task: str) -> int:
        return self._config.ttl_for(task)

    def _version_key(self, subject: str, subject_id: str) -> str:
        return f"{VERSION_PREFIX}{subject}:{subject_id}"

    def _version(self, subject: str, subject_id: str) -> int:
        return self._store.get(self._version_key(subject, subject_id), 0)

    def _bump_version(self, subject: str, subject_id: str) -> int:
        return self._store.increment_with_ttl(self._version_key(subject, subject_id), self._config.version_ttl)

    def _delete_matching(self, pattern: str) -> int:
        deleted = 0
        for key in self._store.keys_matching(pattern):
            if self._store.forget(key):
                deleted += 1
        return deleted
