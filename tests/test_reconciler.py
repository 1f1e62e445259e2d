import json
import threading
from pathlib import Path
from typing import Any, Mapping, Optional

import pytest

from stagehand_automation.errors import CycleError, PlanValidationError, ProviderError
from stagehand_automation.providers.base import Provider, ResourceHandler
from stagehand_automation.providers.memory import MemoryProvider
from stagehand_automation.reconciler import Reconciler
from stagehand_automation.state import StateStore
from stagehand_automation.types import Resource


def network(cidr: str = "10.0.0.0/16", tags: Optional[dict] = None, user_data: str = "#!/bin/sh\n") -> list[Resource]:
    return [
        Resource("vpc", "main", {"cidr_block": cidr, "tags": tags or {"env": "dev"}}),
        Resource("subnet", "public", {"vpc_id": "${main.id}", "cidr_block": "10.0.1.0/24"}),
        Resource(
            "instance",
            "web",
            {"ami": "ami-0abc", "instance_type": "t3.micro", "subnet_id": "${public.id}", "user_data": user_data},
        ),
    ]


def make(tmp_path: Path, provider: Optional[MemoryProvider] = None, **kwargs):
    provider = provider or MemoryProvider()
    store = StateStore(tmp_path / "plan.state.json")
    return provider, Reconciler(provider, store, **kwargs)


def test_applies_in_dependency_order(tmp_path: Path):
    provider, reconciler = make(tmp_path)

    result = reconciler.reconcile(list(reversed(network())))

    assert result.ok
    assert [state.name for state in result.applied] == ["main", "public", "web"]
    assert provider.mutations == [
        ("create", "vpc", "main"),
        ("create", "subnet", "public"),
        ("create", "instance", "web"),
    ]
    subnet = result.state_for("public")
    assert subnet.get("vpc_id") == result.state_for("main").resource_id
    web = result.state_for("web")
    assert web.get("private_ip") == "10.0.1.4"
    assert web.get("public_ip") == "203.0.113.4"
    assert "user_data" not in web.attributes


def test_reapply_makes_no_mutating_calls(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    reconciler.reconcile(network())
    provider.calls.clear()

    _, again = make(tmp_path, provider)
    result = again.reconcile(network())

    assert result.ok
    assert provider.mutations == []
    assert {item.action for item in result.results} == {"noop"}
    assert [call[0] for call in provider.calls] == ["read", "read", "read"]


def test_cycle_makes_no_provider_calls(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    resources = [
        Resource("vpc", "a", {"peer": "${b.id}"}),
        Resource("vpc", "b", depends_on=["a"]),
    ]

    with pytest.raises(CycleError) as excinfo:
        reconciler.reconcile(resources)

    assert excinfo.value.cycle == ["a", "b", "a"]
    assert provider.calls == []


def test_unknown_dependency_makes_no_provider_calls(tmp_path: Path):
    provider, reconciler = make(tmp_path)

    with pytest.raises(PlanValidationError):
        reconciler.reconcile([Resource("subnet", "public", depends_on=["main"])])
    assert provider.calls == []


def test_updatable_change_updates_in_place(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    first = reconciler.reconcile(network())
    provider.calls.clear()

    result = reconciler.reconcile(network(tags={"env": "prod"}))

    assert provider.mutations == [("update", "vpc", "main")]
    assert result.results[0].action == "update"
    assert result.results[0].details == "updated tags"
    assert result.state_for("main").resource_id == first.state_for("main").resource_id


def test_immutable_change_replaces(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    first = reconciler.reconcile([network()[0]])
    provider.calls.clear()

    result = reconciler.reconcile([network(cidr="10.1.0.0/16")[0]])

    assert provider.mutations == [("delete", "vpc", "main"), ("create", "vpc", "main")]
    assert result.results[0].action == "replace"
    assert result.state_for("main").resource_id != first.state_for("main").resource_id


def test_write_only_change_is_detected_from_previous_apply(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    reconciler.reconcile(network())
    provider.calls.clear()

    _, again = make(tmp_path, provider)
    result = again.reconcile(network(user_data="#!/bin/sh\necho v2\n"))

    assert provider.mutations == [("delete", "instance", "web"), ("create", "instance", "web")]
    assert result.results[-1].details == "replaced (user_data)"


def test_dropped_attribute_is_removed_in_place(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    reconciler.reconcile([Resource("vpc", "main", {"cidr_block": "10.0.0.0/16", "tags": {"env": "dev"}})])
    provider.calls.clear()

    _, again = make(tmp_path, provider)
    result = again.reconcile([Resource("vpc", "main", {"cidr_block": "10.0.0.0/16"})])

    assert result.results[0].action == "update"
    assert result.results[0].details == "updated tags"
    assert provider.mutations == [("update", "vpc", "main")]
    assert "tags" not in provider.resources["vpc"]["main"]

    provider.calls.clear()
    _, third = make(tmp_path, provider)
    assert third.reconcile([Resource("vpc", "main", {"cidr_block": "10.0.0.0/16"})]).results[0].action == "noop"
    assert provider.mutations == []


def test_dropped_immutable_attribute_replaces(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    reconciler.reconcile([Resource("subnet", "public", {"cidr_block": "10.0.1.0/24", "availability_zone": "a"})])
    provider.calls.clear()

    _, again = make(tmp_path, provider)
    result = again.reconcile([Resource("subnet", "public", {"cidr_block": "10.0.1.0/24"})])

    assert result.results[0].action == "replace"
    assert provider.mutations == [("delete", "subnet", "public"), ("create", "subnet", "public")]
    assert "availability_zone" not in provider.resources["subnet"]["public"]


def test_failure_skips_dependents_and_keeps_independent_branches(tmp_path: Path):
    provider = MemoryProvider(failures={("create", "public"): "InsufficientFreeAddressesInSubnet"})
    provider, reconciler = make(tmp_path, provider)
    resources = network() + [Resource("security_group", "ssh", {"vpc_id": "${main.id}"})]

    result = reconciler.reconcile(resources)

    assert not result.ok
    assert isinstance(result.error, ProviderError)
    assert result.error.resource == "subnet.public"
    assert result.error.operation == "create"
    assert result.failed == ["public"]
    assert result.skipped == ["web"]
    assert [state.name for state in result.applied] == ["main", "ssh"]
    actions = {item.address: item.action for item in result.results}
    assert actions == {
        "vpc.main": "create",
        "subnet.public": "failed",
        "instance.web": "skipped",
        "security_group.ssh": "create",
    }
    with pytest.raises(ProviderError):
        result.raise_for_error()


class ExplodingHandler(ResourceHandler):
    kind = "bucket"

    def read(self, name: str) -> Optional[dict[str, Any]]:
        return None

    def create(self, name: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
        raise RuntimeError("socket closed")

    def update(self, name, current, attributes, *, removed=()):
        raise AssertionError("not reached")

    def delete(self, name, current):
        raise AssertionError("not reached")


def test_unexpected_handler_errors_are_wrapped():
    reconciler = Reconciler(Provider({"bucket": ExplodingHandler()}))

    result = reconciler.reconcile([Resource("bucket", "logs")])

    assert isinstance(result.error, ProviderError)
    assert result.error.resource == "bucket.logs"
    assert result.error.operation == "create"
    assert isinstance(result.error.__cause__, RuntimeError)


def test_plan_reports_without_mutating(tmp_path: Path):
    provider, reconciler = make(tmp_path)

    result = reconciler.plan(network())

    assert provider.mutations == []
    assert [item.details for item in result.results] == ["would create"] * 3
    assert result.applied == []
    assert not (tmp_path / "plan.state.json").exists()
    assert reconciler.dry_run is False


def test_plan_after_apply_shows_updates(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    reconciler.reconcile(network())
    provider.calls.clear()

    result = reconciler.plan(network(tags={"env": "prod"}))

    assert provider.mutations == []
    assert [item.action for item in result.results] == ["update", "noop", "noop"]
    assert result.results[0].details == "would update tags"


def test_dry_run_uses_placeholder_for_unknown_values():
    provider = MemoryProvider()
    provider.create("vpc", "main", {"cidr_block": "10.0.0.0/16"})
    provider.calls.clear()
    reconciler = Reconciler(provider, dry_run=True)
    resources = [
        Resource("vpc", "main", {"cidr_block": "10.0.0.0/16"}),
        Resource("vpc", "ghost", {"cidr_block": "10.9.0.0/16"}),
        Resource("subnet", "public", {"vpc_id": "${ghost.id}"}, depends_on=["main"]),
    ]

    result = reconciler.reconcile(resources)

    assert [item.action for item in result.results] == ["noop", "create", "create"]
    assert result.ok
    assert provider.mutations == []


def test_removes_resources_no_longer_declared(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    reconciler.reconcile(network())
    provider.calls.clear()

    _, again = make(tmp_path, provider)
    result = again.reconcile(network()[:1])

    assert provider.mutations == [("delete", "instance", "web"), ("delete", "subnet", "public")]
    assert [item.details for item in result.results[1:]] == ["removed (no longer declared)"] * 2
    saved = json.loads((tmp_path / "plan.state.json").read_text())
    assert sorted(saved["resources"]) == ["main"]


def test_failed_apply_keeps_undeclared_resources(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    reconciler.reconcile(network())
    provider.calls.clear()
    provider.failures[("create", "extra")] = "VpcLimitExceeded"

    _, again = make(tmp_path, provider)
    result = again.reconcile([network()[0], Resource("vpc", "extra", {"cidr_block": "10.2.0.0/16"})])

    assert not result.ok
    assert provider.mutations == [("create", "vpc", "extra")]
    saved = json.loads((tmp_path / "plan.state.json").read_text())
    assert sorted(saved["resources"]) == ["main", "public", "web"]


def test_destroy_runs_in_reverse_order(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    reconciler.reconcile(network())
    provider.calls.clear()

    result = reconciler.destroy(network())

    assert result.ok
    assert provider.mutations == [
        ("delete", "instance", "web"),
        ("delete", "subnet", "public"),
        ("delete", "vpc", "main"),
    ]
    assert provider.resources == {"vpc": {}, "subnet": {}, "instance": {}}
    saved = json.loads((tmp_path / "plan.state.json").read_text())
    assert saved["resources"] == {}


def test_destroy_keeps_dependencies_of_failed_delete(tmp_path: Path):
    provider, reconciler = make(tmp_path)
    reconciler.reconcile(network())
    provider.failures[("delete", "public")] = "DependencyViolation"
    provider.calls.clear()

    result = reconciler.destroy(network())

    assert result.failed == ["public"]
    assert result.skipped == ["main"]
    assert provider.mutations == [("delete", "instance", "web"), ("delete", "subnet", "public")]


class BarrierHandler(ResourceHandler):
    """Creation only completes once ``parties`` creations are in flight at the same time."""

    kind = "bucket"
    updatable = frozenset({"*"})

    def __init__(self, parties: int):
        self.barrier = threading.Barrier(parties, timeout=5)
        self.store: dict[str, dict[str, Any]] = {}
        self.lock = threading.Lock()

    def read(self, name):
        with self.lock:
            stored = self.store.get(name)
        return dict(stored) if stored else None

    def create(self, name, attributes):
        self.barrier.wait()
        with self.lock:
            self.store[name] = {"id": f"bucket-{name}", **attributes}
            return dict(self.store[name])

    def update(self, name, current, attributes, *, removed=()):
        raise AssertionError("not reached")

    def delete(self, name, current):
        raise AssertionError("not reached")


def test_independent_resources_apply_concurrently():
    handler = BarrierHandler(parties=2)
    reconciler = Reconciler(Provider({"bucket": handler}), max_workers=4)

    result = reconciler.reconcile([Resource("bucket", "logs"), Resource("bucket", "assets")])

    assert result.ok
    assert sorted(handler.store) == ["assets", "logs"]


def test_concurrent_apply_respects_dependencies(tmp_path: Path):
    provider, reconciler = make(tmp_path, max_workers=4)
    resources = network() + [
        Resource("security_group", "ssh", {"vpc_id": "${main.id}"}),
        Resource("vpc", "peer", {"cidr_block": "10.8.0.0/16"}),
    ]

    result = reconciler.reconcile(resources)

    assert result.ok
    creates = [call[2] for call in provider.mutations]
    assert creates.index("main") < creates.index("public") < creates.index("web")
    assert creates.index("main") < creates.index("ssh")
    assert result.state_for("web").get("subnet_id") == result.state_for("public").resource_id


def test_progress_callback_sees_each_resource(tmp_path: Path):
    seen = []
    _, reconciler = make(tmp_path, progress_callback=lambda resource: seen.append(resource.address))

    reconciler.reconcile(network())

    assert seen == ["vpc.main", "subnet.public", "instance.web"]
