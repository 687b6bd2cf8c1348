"""Builder for cpuset.cpus and cpuset.mems strings."""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class CPUSet:
    """The cpuset.cpus and cpuset.mems values for a process."""

    cpus: str = ""
    mems: str = ""


def _stringify(elems: tuple[int, ...], ranges: tuple[tuple[int, int], ...]) -> str:
    parts = [str(elem) for elem in elems]
    parts.extend(f"{low}-{high}" for low, high in ranges)
    return ",".join(parts)


@dataclass(frozen=True)
class Builder:
    """Immutable builder; each ``add_*`` call returns a new Builder."""

    cpus: tuple[int, ...] = ()
    cpu_ranges: tuple[tuple[int, int], ...] = ()
    mems: tuple[int, ...] = ()
    mem_ranges: tuple[tuple[int, int], ...] = ()

    def add_cpu(self, cpu: int) -> Builder:
        """Add a physical CPU the process may run on."""
        return replace(self, cpus=self.cpus + (cpu,))

    def add_cpu_range(self, low: int, high: int) -> Builder:
        """Add a range of physical CPUs the process may run on."""
        return replace(self, cpu_ranges=self.cpu_ranges + ((low, high),))

    def add_mem(self, mem: int) -> Builder:
        """Add a memory node the CPUs may allocate from."""
        return replace(self, mems=self.mems + (mem,))

    def add_mem_range(self, low: int, high: int) -> Builder:
        """Add a range of memory nodes."""
        return replace(self, mem_ranges=self.mem_ranges + ((low, high),))

    def build(self) -> CPUSet:
        """Construct the CPUSet."""
        return CPUSet(
            cpus=_stringify(self.cpus, self.cpu_ranges),
            mems=_stringify(self.mems, self.mem_ranges),
        )