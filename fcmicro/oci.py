"""OCI spec options for microVM containers."""

from __future__ import annotations

from typing import Any, Callable, MutableMapping

VMID_ANNOTATION_KEY = "aws.firecracker.vm.id"
"""OCI annotation key naming the VM a container should run in."""

SpecOpt = Callable[[MutableMapping[str, Any]], None]


def with_vmid(vm_id: str) -> SpecOpt:
    """Return a spec option that annotates an OCI spec with ``vm_id``."""

    def apply(spec: MutableMapping[str, Any]) -> None:
        if spec.get("annotations") is None:
            spec["annotations"] = {}
        spec["annotations"][VMID_ANNOTATION_KEY] = vm_id

    return apply