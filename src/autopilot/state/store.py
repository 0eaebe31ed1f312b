from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from autopilot.models import (
    Action,
    ActionTrace,
    LogEntry,
    PendingAction,
    Span,
    TaskMapping,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_MAX_ROTATED = 3
DEFAULT_CURSOR_MAX_IDS = 200
METRIC_HISTORY_LIMIT = 200


class StoreError(RuntimeError):
    """Raised when persistent-state operations fail."""


class AutopilotStore:
    """File-backed state for one automation-tracked project.

    Small documents (queue, traces, task mappings, cursor, metrics) live under
    ``state/`` as revisioned JSON envelopes. Spans and actions are one file per
    record, and ``log.jsonl`` is an append-only, size-rotated log.
    """

    NAMESPACES = {"queue", "traces", "task_mappings", "cursor", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(
        self,
        base_dir: Path,
        *,
        log_max_bytes: int = DEFAULT_LOG_MAX_BYTES,
        log_max_rotated: int = DEFAULT_LOG_MAX_ROTATED,
        cursor_max_ids: int = DEFAULT_CURSOR_MAX_IDS,
        lock_timeout_seconds: float = 3.0,
    ) -> None:
        self.base_dir = base_dir.resolve()
        self.state_dir = self.base_dir / "state"
        self.spans_dir = self.base_dir / "spans"
        self.actions_dir = self.base_dir / "actions"
        self.log_file = self.base_dir / "log.jsonl"
        self.lock_file = self.state_dir / ".lock"
        self.log_max_bytes = log_max_bytes
        self.log_max_rotated = max(0, log_max_rotated)
        self.cursor_max_ids = max(1, cursor_max_ids)
        self.lock_timeout_seconds = lock_timeout_seconds

    def ensure_dir(self) -> None:
        try:
            for directory in (self.state_dir, self.spans_dir, self.actions_dir):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"Cannot create state directory {self.base_dir}: {exc}") from exc

    @contextmanager
    def _state_lock(self):
        self.ensure_dir()
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)
            except OSError as exc:
                raise StoreError(f"Cannot acquire state lock: {exc}") from exc

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _atomic_write(path: Path, serialized: str) -> None:
        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_name = handle.name
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            raise StoreError(f"Failed to write {path}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    @staticmethod
    def _read_file_json(path: Path) -> Any:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreError(f"Failed to read {path}: {exc}") from exc
        if not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise StoreError(f"Corrupt state document {path}: {exc}") from exc

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in AutopilotStore.NAMESPACES:
            raise StoreError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        # Bare payloads written before envelopes existed.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0 if raw_payload is None else 1,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        raw = self._read_file_json(self._local_file(namespace))
        return self._normalize_envelope(raw, default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def _write_envelope(self, namespace: str, data: Any, revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": data,
        }
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
        self._atomic_write(self._local_file(namespace), serialized)

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace)
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StoreError(f"Concurrent state update detected for namespace '{namespace}'.")
            self._write_envelope(namespace, data, current_revision + 1)

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        with self._state_lock():
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            self._write_envelope(namespace, updated, int(current.get("revision", 0)) + 1)
            return updated

    # Pending actions

    @staticmethod
    def _queue_items(payload: Any) -> list[dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        items = payload.get("pending", [])
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict) and item.get("action_id")]

    def get_pending(self) -> list[PendingAction]:
        """Outstanding actions in creation order."""
        items = self._queue_items(self.get_json("queue", default={"pending": []}))
        return [PendingAction.from_dict(item) for item in items]

    def add_pending(self, action: PendingAction) -> None:
        self.complete_pending(None, [action])

    def remove_pending(self, action_id: str) -> None:
        self.complete_pending(action_id, [])

    def complete_pending(
        self, consumed_id: str | None, successors: Iterable[PendingAction]
    ) -> None:
        """Drop ``consumed_id`` and queue ``successors`` in a single document write."""
        additions = [action.to_dict() for action in successors]

        def _updater(payload: Any) -> dict[str, Any]:
            items = [
                item
                for item in self._queue_items(payload)
                if item.get("action_id") != consumed_id
            ]
            known = {item["action_id"] for item in items}
            for addition in additions:
                if addition["action_id"] in known:
                    continue
                known.add(addition["action_id"])
                items.append(addition)
            return {"pending": items}

        self.update_json("queue", _updater, default={"pending": []})

    # Task mappings

    def _mappings_payload(self) -> dict[str, Any]:
        payload = self.get_json("task_mappings", default={})
        return payload if isinstance(payload, dict) else {}

    def get_task_mapping(self, action_id: str) -> TaskMapping | None:
        entry = self._mappings_payload().get(action_id)
        if not isinstance(entry, dict):
            return None
        return TaskMapping.from_dict(entry)

    def set_task_mapping(self, action_id: str, mapping: TaskMapping) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            result[action_id] = mapping.to_dict()
            return result

        self.update_json("task_mappings", _updater, default={})

    def get_all_task_mappings(self) -> dict[str, TaskMapping]:
        return {
            action_id: TaskMapping.from_dict(entry)
            for action_id, entry in self._mappings_payload().items()
            if isinstance(entry, dict)
        }

    # Traces

    def load_traces(self) -> dict[str, ActionTrace]:
        payload = self.get_json("traces", default={})
        if not isinstance(payload, dict):
            return {}
        return {
            trace_id: ActionTrace.from_dict(entry)
            for trace_id, entry in payload.items()
            if isinstance(entry, dict) and entry.get("id")
        }

    def save_traces(self, traces: dict[str, ActionTrace]) -> None:
        snapshot = {trace_id: trace.to_dict() for trace_id, trace in traces.items()}
        self.update_json("traces", lambda _current: snapshot, default={})

    # Spans and actions

    def write_span(self, span: Span) -> None:
        self.ensure_dir()
        serialized = json.dumps(span.to_dict(), ensure_ascii=False, indent=2)
        self._atomic_write(self.spans_dir / f"{span.id}.json", serialized)

    def read_span(self, span_id: str) -> Span | None:
        try:
            payload = self._read_file_json(self.spans_dir / f"{span_id}.json")
        except StoreError as exc:
            logger.warning("Skipping unreadable span %s: %s", span_id, exc)
            return None
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        return Span.from_dict(payload)

    def get_span_trace(self, span_id: str) -> list[Span]:
        """Walk ``parent_id`` links from ``span_id`` to the root, returned root-first."""
        chain: list[Span] = []
        seen: set[str] = set()
        current: str | None = span_id
        while current and current not in seen:
            seen.add(current)
            span = self.read_span(current)
            if span is None:
                break
            chain.append(span)
            current = span.parent_id
        chain.reverse()
        return chain

    def write_action(self, action: Action) -> None:
        self.ensure_dir()
        serialized = json.dumps(action.to_dict(), ensure_ascii=False, indent=2)
        self._atomic_write(self.actions_dir / f"{action.id}.json", serialized)

    def read_action(self, action_id: str) -> Action | None:
        try:
            payload = self._read_file_json(self.actions_dir / f"{action_id}.json")
        except StoreError as exc:
            logger.warning("Skipping unreadable action %s: %s", action_id, exc)
            return None
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        return Action.from_dict(payload)

    # Structured log

    def _rotated_log(self, index: int) -> Path:
        return self.base_dir / f"log.{index}.jsonl"

    def _rotate_logs(self) -> None:
        if self.log_max_rotated == 0:
            self.log_file.unlink(missing_ok=True)
            return
        self._rotated_log(self.log_max_rotated).unlink(missing_ok=True)
        for index in range(self.log_max_rotated - 1, 0, -1):
            source = self._rotated_log(index)
            if source.exists():
                os.replace(source, self._rotated_log(index + 1))
        os.replace(self.log_file, self._rotated_log(1))

    def append_log(self, entry: LogEntry) -> None:
        line = json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"
        with self._state_lock():
            try:
                if (
                    self.log_file.exists()
                    and self.log_file.stat().st_size + len(line.encode("utf-8"))
                    > self.log_max_bytes
                ):
                    self._rotate_logs()
                with self.log_file.open("a", encoding="utf-8") as handle:
                    handle.write(line)
                    handle.flush()
                    os.fsync(handle.fileno())
            except OSError as exc:
                raise StoreError(f"Failed to append to {self.log_file}: {exc}") from exc

    def read_logs(self, max_entries: int | None = None) -> list[dict[str, Any]]:
        files = [self._rotated_log(index) for index in range(self.log_max_rotated, 0, -1)]
        files.append(self.log_file)
        entries: list[dict[str, Any]] = []
        for path in files:
            if not path.exists():
                continue
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except OSError as exc:
                raise StoreError(f"Failed to read {path}: {exc}") from exc
            for raw in lines:
                if not raw.strip():
                    continue
                try:
                    parsed = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    entries.append(parsed)
        if max_entries is not None:
            return entries[-max_entries:] if max_entries > 0 else []
        return entries

    # Event cursor

    def _processed_event_ids(self) -> list[str]:
        payload = self.get_json("cursor", default={"processed_event_ids": []})
        if not isinstance(payload, dict):
            return []
        ids = payload.get("processed_event_ids", [])
        return [str(item) for item in ids] if isinstance(ids, list) else []

    def is_event_processed(self, event_id: str) -> bool:
        return event_id in self._processed_event_ids()

    def mark_events_processed(self, event_ids: Iterable[str]) -> None:
        new_ids = [str(event_id) for event_id in event_ids]
        if not new_ids:
            return

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            existing = result.get("processed_event_ids", [])
            ids = [str(item) for item in existing] if isinstance(existing, list) else []
            for event_id in new_ids:
                if event_id not in ids:
                    ids.append(event_id)
            result["processed_event_ids"] = ids[-self.cursor_max_ids :]
            result["updated_at"] = utcnow_iso()
            return result

        self.update_json("cursor", _updater, default={"processed_event_ids": []})

    # Metrics

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def set_metrics(self, metrics: dict[str, Any]) -> None:
        self.set_json("metrics", metrics)

    def record_metric_event(self, event: dict[str, Any]) -> None:
        """Append a backend event to the bounded history and bump its counters."""

        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            events = metrics.get("backend_events", [])
            if not isinstance(events, list):
                events = []
            event_payload = dict(event)
            event_payload["at"] = utcnow_iso()
            events.append(event_payload)
            metrics["backend_events"] = events[-METRIC_HISTORY_LIMIT:]
            if event.get("event") == "backend_retry":
                metrics["backend_retry_count"] = int(metrics.get("backend_retry_count", 0)) + 1
            if event.get("event") == "backend_fallback_success":
                metrics["backend_fallback_count"] = (
                    int(metrics.get("backend_fallback_count", 0)) + 1
                )
            return metrics

        self.update_json("metrics", _updater, default={})
