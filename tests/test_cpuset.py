import pytest

from fcmicro.cpuset import Builder, CPUSet


@pytest.mark.parametrize(
    "cpus, cpu_ranges, mems, mem_ranges, expected",
    [
        ([], [], [], [], CPUSet()),
        ([0], [], [], [], CPUSet(cpus="0")),
        ([0, 5, 6], [], [], [], CPUSet(cpus="0,5,6")),
        ([], [], [2], [], CPUSet(mems="2")),
        ([], [], [2, 8, 3], [], CPUSet(mems="2,8,3")),
        ([], [(0, 3)], [], [], CPUSet(cpus="0-3")),
        ([], [(0, 3), (5, 10)], [], [], CPUSet(cpus="0-3,5-10")),
        ([], [], [], [(0, 1)], CPUSet(mems="0-1")),
        ([], [], [], [(0, 1), (2, 3)], CPUSet(mems="0-1,2-3")),
        (
            [15, 17, 31],
            [(0, 3)],
            [128, 131, 140],
            [(0, 1), (2, 3)],
            CPUSet(cpus="15,17,31,0-3", mems="128,131,140,0-1,2-3"),
        ),
    ],
    ids=[
        "empty set",
        "single cpu only",
        "cpus only",
        "single mem only",
        "mems only",
        "cpu single range only",
        "cpu ranges only",
        "mem single range only",
        "mem ranges only",
        "all inclusive",
    ],
)
def test_cpuset(cpus, cpu_ranges, mems, mem_ranges, expected):
    b = Builder()
    for cpu in cpus:
        b = b.add_cpu(cpu)
    for low, high in cpu_ranges:
        b = b.add_cpu_range(low, high)
    for mem in mems:
        b = b.add_mem(mem)
    for low, high in mem_ranges:
        b = b.add_mem_range(low, high)
    assert b.build() == expected


def test_builder_is_immutable():
    base = Builder()
    extended = base.add_cpu(0).add_mem(2)
    assert base.build() == CPUSet()
    assert extended.build() == CPUSet(cpus="0", mems="2")