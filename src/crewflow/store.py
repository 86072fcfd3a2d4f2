from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from crewflow.errors import ConfigurationError, StaleRevisionError, StateError
from crewflow.executor import ExecutionEvent
from crewflow.models import utcnow_iso
from crewflow.report import ExecutionReport
from crewflow.team import TeamDefinition
from crewflow.workflow import WorkflowState

logger = logging.getLogger(__name__)

STATE_DIRECTORY = Path(".crewflow") / "state"
ENVELOPE_KEYS = frozenset({"schema_version", "revision", "data"})


class StateStore:
    """Versioned JSON documents under ``<root>/.crewflow/state``.

    Each namespace is one file holding an envelope
    ``{schema_version, revision, updated_at, data}``. Writes take an exclusive
    lock file and bump the revision; ``expected_revision`` turns a stale write
    into a ``StateError``.
    """

    NAMESPACES = {"workflows", "teams", "reports", "metrics"}
    SCHEMA_VERSION = 1
    UPDATE_ATTEMPTS = 4

    def __init__(self, root: Path, *, state_directory: Path | None = None) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / (state_directory or STATE_DIRECTORY)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _check_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            known = ", ".join(sorted(StateStore.NAMESPACES))
            raise StateError(f"Unknown state namespace {namespace!r} (expected one of {known})")

    def _state_file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _write_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        """Hold ``.lock`` in the state directory; the file records the holder's pid."""
        deadline = time.monotonic() + timeout_seconds
        while True:
            try:
                with self.lock_file.open("x", encoding="utf-8") as handle:
                    handle.write(str(os.getpid()))
                break
            except FileExistsError as exc:
                if time.monotonic() > deadline:
                    holder = self.lock_file.read_text(encoding="utf-8", errors="replace")
                    raise StateError(
                        f"State directory {self.state_dir} is locked by pid {holder or '?'}"
                    ) from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            self.lock_file.unlink(missing_ok=True)

    def _load_file(self, namespace: str) -> Any:
        state_file = self._state_file(namespace)
        try:
            return json.loads(state_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", state_file)
            return None

    def _store_file(self, namespace: str, envelope: dict[str, Any]) -> None:
        target = self._state_file(namespace)
        staging = target.with_suffix(".json.tmp")
        staging.write_text(
            json.dumps(envelope, ensure_ascii=False, separators=(",", ":")), encoding="utf-8"
        )
        os.replace(staging, target)

    def _wrap(self, data: Any, revision: int) -> dict[str, Any]:
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": data,
        }

    def _as_envelope(self, stored: Any, default: Any) -> dict[str, Any]:
        # Files written before the envelope existed hold the bare payload.
        if not (isinstance(stored, dict) and ENVELOPE_KEYS <= stored.keys()):
            return self._wrap(default if stored is None else stored, 1)
        envelope = self._wrap(stored["data"], int(stored["revision"] or 1))
        envelope["schema_version"] = int(stored["schema_version"] or self.SCHEMA_VERSION)
        envelope["updated_at"] = stored.get("updated_at") or envelope["updated_at"]
        return envelope

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._check_namespace(namespace)
        return self._as_envelope(self._load_file(namespace), {} if default is None else default)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default)["data"]

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        """Replace a namespace's data, bumping its revision.

        With ``expected_revision`` the write only lands if nobody else has
        written since that revision was read.
        """
        self._check_namespace(namespace)
        with self._write_lock():
            revision = self.get_envelope(namespace)["revision"]
            if expected_revision is not None and expected_revision != revision:
                raise StaleRevisionError(namespace, expected=expected_revision, found=revision)
            self._store_file(namespace, self._wrap(data, revision + 1))

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Read-modify-write ``namespace``, re-running ``updater`` when another writer wins."""
        fallback = {} if default is None else default
        attempt = 0
        while True:
            attempt += 1
            envelope = self.get_envelope(namespace, default=fallback)
            updated = updater(envelope["data"])
            try:
                self.set_json(namespace, updated, expected_revision=envelope["revision"])
            except StaleRevisionError:
                if attempt == self.UPDATE_ATTEMPTS:
                    raise
                logger.debug("Retrying %s update after a concurrent write", namespace)
                time.sleep(0.01 * attempt)
                continue
            return updated

    def _put_document(self, namespace: str, key: str, document: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            entries = result.setdefault("entries", {})
            entries[key] = document
            result["latest"] = key
            return result

        self.update_json(namespace, _updater, default={"entries": {}})

    def _get_document(self, namespace: str, key: str | None) -> dict[str, Any] | None:
        payload = self.get_json(namespace, default={"entries": {}})
        if not isinstance(payload, dict):
            return None
        entries = payload.get("entries") or {}
        key = key or payload.get("latest")
        if key is None:
            return None
        document = entries.get(key)
        return document if isinstance(document, dict) else None

    def list_keys(self, namespace: str) -> list[str]:
        payload = self.get_json(namespace, default={"entries": {}})
        if not isinstance(payload, dict):
            return []
        return sorted(payload.get("entries") or {})

    def save_workflow(self, workflow: WorkflowState) -> None:
        self._put_document("workflows", workflow.id, workflow.to_dict())

    def load_workflow(self, workflow_id: str | None = None) -> WorkflowState | None:
        """Load a stored workflow, or the most recently saved one when no id is given."""
        document = self._get_document("workflows", workflow_id)
        if document is None:
            return None
        try:
            return WorkflowState.from_dict(document)
        except (AttributeError, KeyError, TypeError, ValueError, ConfigurationError) as exc:
            raise StateError(f"Stored workflow is malformed: {exc}") from exc

    def save_team(self, team: TeamDefinition) -> None:
        self._put_document("teams", team.id, team.to_dict())

    def load_team(self, team_id: str | None = None) -> TeamDefinition | None:
        document = self._get_document("teams", team_id)
        if document is None:
            return None
        try:
            return TeamDefinition.from_dict(document)
        except (AttributeError, KeyError, TypeError, ValueError, ConfigurationError) as exc:
            raise StateError(f"Stored team is malformed: {exc}") from exc

    def save_report(self, report: ExecutionReport) -> None:
        self._put_document("reports", report.workflow_id, report.to_dict())

    def load_report(self, workflow_id: str | None = None) -> ExecutionReport | None:
        document = self._get_document("reports", workflow_id)
        if document is None:
            return None
        try:
            return ExecutionReport.from_dict(document)
        except (AttributeError, KeyError, TypeError, ValueError, ConfigurationError) as exc:
            raise StateError(f"Stored report is malformed: {exc}") from exc

    def record_event_metrics(
        self, workflow_id: str, events: Iterable[ExecutionEvent]
    ) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for event in events:
            counts[event.type] = counts.get(event.type, 0) + 1

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            totals = result.setdefault("event_counts", {})
            for event_type, count in counts.items():
                totals[event_type] = int(totals.get(event_type, 0)) + count
            result.setdefault("workflows", {})[workflow_id] = {
                "event_counts": counts,
                "recorded_at": utcnow_iso(),
            }
            return result

        return self.update_json("metrics", _updater, default={})

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}
