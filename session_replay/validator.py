import json
import os
import threading
import time
from collections import defaultdict

import jsonschema

from session_replay.errors import InvalidPayload
from session_replay.models import Event, event_from_dict

SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schemas", "ingest_batch.json")

# Allowed clock skew for event timestamps ahead of the server clock.
MAX_FUTURE_SKEW_MS = 5 * 60 * 1000


class BatchValidator:
    """Validates ingest request bodies against the batch JSON schema,
    then checks what the schema cannot express."""

    def __init__(self, schema_path=SCHEMA_PATH, max_batch_events=500, time_func=None):
        with open(schema_path, "r") as f:
            schema = json.load(f)

        self._validator = jsonschema.Draft202012Validator(schema)
        self._max_batch_events = max_batch_events
        self._time_func = time_func or time.time
        self._lock = threading.Lock()
        self._stats = {
            "total": 0,
            "valid": 0,
            "invalid": 0,
            "error_types": defaultdict(int),
        }

    def validate(self, body):
        """Validate a decoded request body.

        Returns:
            tuple: (is_valid: bool, errors: list[str])
        """
        errors = []
        for error in self._validator.iter_errors(body):
            path = "/".join(str(p) for p in error.absolute_path)
            errors.append(f"{path}: {error.message}" if path else error.message)
            self._count_error(error.validator)

        if not errors:
            errors = self._check_semantics(body)

        with self._lock:
            self._stats["total"] += 1
            if errors:
                self._stats["invalid"] += 1
            else:
                self._stats["valid"] += 1
        return not errors, errors

    def parse(self, body) -> list[Event]:
        """Validate *body* and build its events, or raise InvalidPayload."""
        is_valid, errors = self.validate(body)
        if not is_valid:
            raise InvalidPayload("batch failed validation", errors=errors)
        try:
            return [event_from_dict(entry) for entry in body["events"]]
        except (TypeError, ValueError, KeyError) as exc:
            raise InvalidPayload(f"malformed event: {exc}") from exc

    def get_stats(self):
        """Return a copy of the stats dict."""
        with self._lock:
            stats = dict(self._stats)
            stats["error_types"] = dict(stats["error_types"])
        return stats

    def _check_semantics(self, body):
        errors = []
        events = body["events"]
        if len(events) > self._max_batch_events:
            errors.append(
                f"events: batch of {len(events)} exceeds limit of {self._max_batch_events}"
            )
            self._count_error("maxBatchEvents")

        latest = int(self._time_func() * 1000) + MAX_FUTURE_SKEW_MS
        seen = set()
        for i, event in enumerate(events):
            if event["sessionId"] != body["sessionId"]:
                errors.append(f"events/{i}/sessionId: does not match batch sessionId")
                self._count_error("sessionId")
            if event["timestamp"] > latest:
                errors.append(f"events/{i}/timestamp: {event['timestamp']} is in the future")
                self._count_error("timestamp")
            if event["id"] in seen:
                errors.append(f"events/{i}/id: duplicate id {event['id']!r} in batch")
                self._count_error("uniqueId")
            seen.add(event["id"])
        return errors

    def _count_error(self, kind):
        with self._lock:
            self._stats["error_types"][kind] += 1
