"""
In-memory provisioning provider.

Mimics the identities and attributes an AWS account would hand back (ARNs,
VPC/subnet ids, load balancer DNS names) without touching the network. Used by
the CLI for dry runs and by the test-suite, with hooks to inject failures and
latency.
"""
import ipaddress
import json
import os
import threading
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from clusterstack.errors import InvalidConfigError, ResourceNotFoundError


class SimulatedProviderError(Exception):
    """Failure raised on purpose by InMemoryProvider."""

    pass


def _short() -> str:
    return uuid.uuid4().hex[:12]


class InMemoryProvider:
    def __init__(
        self,
        region: str = "us-east-1",
        account_id: str = "123456789012",
        fail_at: Optional[int] = None,
        fail_kinds: Iterable[str] = (),
        fail_delete_kinds: Iterable[str] = (),
        latency: float = 0.0,
        latency_by_kind: Optional[Dict[str, float]] = None,
    ):
        self.region = region
        self.account_id = account_id
        self.fail_at = fail_at                      # 1-based index of the create/update call to fail
        self.fail_kinds = set(fail_kinds)
        self.fail_delete_kinds = set(fail_delete_kinds)
        self.latency = latency
        self.latency_by_kind = dict(latency_by_kind or {})

        self.resources: Dict[str, Dict[str, Any]] = {}
        self.secret_strings: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []      # (operation, kind)
        self._provision_calls = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ helpers
    def _arn(self, service: str, resource: str) -> str:
        return f"arn:aws:{service}:{self.region}:{self.account_id}:{resource}"

    def _sleep(self, kind: str) -> None:
        delay = self.latency_by_kind.get(kind, self.latency)
        if delay:
            time.sleep(delay)

    def _record_call(self, operation: str, kind: str) -> int:
        with self._lock:
            self.calls.append((operation, kind))
            if operation in ("create", "update"):
                self._provision_calls += 1
                return self._provision_calls
            return 0

    def _lookup(self, identity: str) -> Dict[str, Any]:
        with self._lock:
            record = self.resources.get(identity)
        if record is None:
            raise ResourceNotFoundError(f"No such resource: {identity}")
        return record

    def call_count(self, operation: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for op, _ in self.calls if operation is None or op == operation)

    # ------------------------------------------------------------------ builders
    def _network(self, config: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        try:
            block = ipaddress.ip_network(config["cidr"])
        except (KeyError, ValueError) as exc:
            raise InvalidConfigError(f"Invalid network address block: {exc}")
        vpc_id = f"vpc-{_short()}"
        azs = int(config.get("max_azs", 2))
        attributes: Dict[str, Any] = {"vpc_id": vpc_id, "cidr": str(block)}
        tiers: Dict[str, List[str]] = {}
        for subnet in config.get("subnets", []):
            tier = subnet.get("subnet_type", "public")
            tiers.setdefault(tier, []).extend(f"subnet-{_short()}" for _ in range(azs))
        for tier, ids in tiers.items():
            attributes[f"{tier}_subnet_ids"] = ids
        return vpc_id, attributes

    def _build(self, kind: str, config: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        name = config.get("name") or f"{kind.lower()}-{_short()}"
        if kind == "Network":
            return self._network(config)
        if kind == "ComputeCluster":
            arn = self._arn("ecs", f"cluster/{name}")
            return arn, {"arn": arn, "cluster_name": name, "vpc_id": config.get("vpc")}
        if kind == "CapacityPool":
            arn = self._arn(
                "autoscaling",
                f"autoScalingGroup:{uuid.uuid4()}:autoScalingGroupName/{name}",
            )
            return arn, {"arn": arn, "group_name": name, "instance_type": config.get("instance_type")}
        if kind == "SecretStore":
            arn = self._arn("secretsmanager", f"secret:{name}-{_short()[:6]}")
            secret_string = config.get("secret_string")
            if secret_string is not None:
                self.secret_strings[arn] = secret_string
            return arn, {"arn": arn, "secret_name": name}
        if kind == "ContainerTask":
            family = config.get("family") or name
            with self._lock:
                revision = 1 + sum(
                    1 for r in self.resources.values()
                    if r["kind"] == "ContainerTask" and r["attributes"].get("family") == family
                )
            arn = self._arn("ecs", f"task-definition/{family}:{revision}")
            return arn, {"arn": arn, "family": family, "revision": revision}
        if kind == "Service":
            cluster = str(config.get("cluster", "")).rsplit("/", 1)[-1]
            arn = self._arn("ecs", f"service/{cluster}/{name}")
            return arn, {"arn": arn, "service_name": name, "desired_count": config.get("desired_count")}
        if kind == "LoadBalancer":
            suffix = _short()
            arn = self._arn("elasticloadbalancing", f"loadbalancer/app/{name}/{suffix}")
            dns = f"{name}-{int(suffix, 16) % 10**10}.{self.region}.elb.amazonaws.com"
            if not config.get("internet_facing", True):
                dns = "internal-" + dns
            return arn, {"arn": arn, "dns_name": dns, "name": name}
        if kind == "Listener":
            lb = str(config.get("load_balancer", "")).split("loadbalancer/", 1)[-1]
            arn = self._arn("elasticloadbalancing", f"listener/{lb}/{_short()}")
            target_group = self._arn("elasticloadbalancing", f"targetgroup/{name}/{_short()}")
            return arn, {"arn": arn, "port": config.get("port"), "target_group_arn": target_group}
        raise InvalidConfigError(f"Unsupported resource kind: {kind}")

    def _maybe_fail(self, call_number: int, kind: str) -> None:
        if self.fail_at is not None and call_number == self.fail_at:
            raise SimulatedProviderError(f"Injected failure on provisioning call #{call_number} ({kind})")
        if kind in self.fail_kinds:
            raise SimulatedProviderError(f"Injected failure creating {kind}")

    # ------------------------------------------------------------------ API
    def create(self, kind: str, config: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        call_number = self._record_call("create", kind)
        self._sleep(kind)
        self._maybe_fail(call_number, kind)
        identity, attributes = self._build(kind, config)
        with self._lock:
            stored = {k: v for k, v in config.items() if k != "secret_string"}
            self.resources[identity] = {"kind": kind, "config": stored, "attributes": attributes}
        return identity, dict(attributes)

    def update(self, identity: str, config: Dict[str, Any]) -> Dict[str, Any]:
        record = self._lookup(identity)
        call_number = self._record_call("update", record["kind"])
        self._sleep(record["kind"])
        self._maybe_fail(call_number, record["kind"])
        with self._lock:
            record["config"] = {k: v for k, v in config.items() if k != "secret_string"}
            for key in ("desired_count", "port"):
                if key in config and key in record["attributes"]:
                    record["attributes"][key] = config[key]
            if "secret_string" in config:
                self.secret_strings[identity] = config["secret_string"]
            return dict(record["attributes"])

    def delete(self, identity: str) -> None:
        record = self._lookup(identity)
        self._record_call("delete", record["kind"])
        self._sleep(record["kind"])
        if record["kind"] in self.fail_delete_kinds:
            raise SimulatedProviderError(f"Injected failure deleting {record['kind']} {identity}")
        with self._lock:
            self.resources.pop(identity, None)
            self.secret_strings.pop(identity, None)

    def describe(self, identity: str) -> Dict[str, Any]:
        record = self._lookup(identity)
        self._record_call("describe", record["kind"])
        return dict(record["attributes"])

    # ------------------------------------------------------------------ persistence
    def save(self, path: str) -> None:
        """Write the simulated account to ``path`` so later CLI runs see it."""
        with self._lock:
            data = {
                "region": self.region,
                "account_id": self.account_id,
                "resources": self.resources,
                "secret_strings": self.secret_strings,
            }
            with open(path, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(data, fh, indent=2)

    @classmethod
    def load(cls, path: str, **kwargs) -> "InMemoryProvider":
        """Restore a simulated account saved by ``save``; a missing file is an empty account."""
        data: Dict[str, Any] = {}
        if os.path.exists(path):
            with open(path) as fh:
                data = json.load(fh)
        kwargs.setdefault("region", data.get("region", "us-east-1"))
        kwargs.setdefault("account_id", data.get("account_id", "123456789012"))
        provider = cls(**kwargs)
        provider.resources = data.get("resources", {})
        provider.secret_strings = data.get("secret_strings", {})
        return provider

    def get_secret_value(self, identity: str, field: str) -> str:
        """Read one field of a stored secret, the way a task would at start-up."""
        self._lookup(identity)
        return json.loads(self.secret_strings[identity])[field]
