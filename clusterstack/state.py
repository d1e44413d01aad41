"""
Last-known realized state, persisted between runs as a JSON file.

Only identities, provider attributes and canonical (symbolic) configuration are
written; generated secret values stay in memory.
"""
import json
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from clusterstack.errors import InvalidConfigError
from clusterstack.models.realized import RealizedResource

DEFAULT_STATE_FILE = ".clusterstack_state.json"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class StateStore:
    def __init__(self, path: str = DEFAULT_STATE_FILE):
        self.path = path
        self.state = self._load()

    def _empty(self) -> Dict[str, Any]:
        return {
            "deployment_id": None,
            "stack": None,
            "created_at": None,
            "last_updated": None,
            "status": "not_deployed",
            "error": None,
            "resources": {},
            "outputs": {},
        }

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return self._empty()
        try:
            with open(self.path) as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise InvalidConfigError(f"State file {self.path} is unreadable: {exc}")
        state = self._empty()
        state.update(data)
        return state

    def save(self) -> None:
        self.state["last_updated"] = _now()
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(self.state, fh, indent=2, sort_keys=False)
        os.replace(tmp, self.path)

    @property
    def status(self) -> str:
        return self.state.get("status", "not_deployed")

    def resources(self) -> Dict[str, RealizedResource]:
        """Recorded resources, in the order they were realized."""
        return {
            node_id: RealizedResource.from_dict(data)
            for node_id, data in self.state.get("resources", {}).items()
        }

    def outputs(self) -> Dict[str, str]:
        return dict(self.state.get("outputs") or {})

    def start_deployment(self, stack: str) -> str:
        deployment_id = uuid.uuid4().hex[:12]
        self.state["deployment_id"] = deployment_id
        self.state["stack"] = stack
        if not self.state.get("created_at"):
            self.state["created_at"] = _now()
        self.state["status"] = "deploying"
        self.state["error"] = None
        self.save()
        return deployment_id

    def record(
        self,
        realized: Mapping[str, RealizedResource],
        outputs: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Replace the recorded resources with a successful run's result."""
        self.state["resources"] = {node_id: r.to_dict() for node_id, r in realized.items()}
        self.state["outputs"] = dict(outputs or {})
        self.state["status"] = "deployed"
        self.state["error"] = None
        self.save()

    def mark_failed(self, error: str, survivors: Optional[Mapping[str, RealizedResource]] = None) -> None:
        """
        Record a failed run. ``survivors`` are resources that still exist on the
        provider (kept from earlier runs or left behind by a failed rollback)
        so that the next plan sees them.
        """
        if survivors is not None:
            self.state["resources"] = {node_id: r.to_dict() for node_id, r in survivors.items()}
        self.state["status"] = "failed"
        self.state["error"] = error
        self.save()

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)
        self.state = self._empty()
