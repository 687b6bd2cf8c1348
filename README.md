# fcmicro

A library of helpers for running containers inside lightweight virtual machines.
It holds the pieces that a host-side runtime and an in-VM agent share. These are
stub drives, directory layouts, stdio proxying over FIFOs and vsock, and task
bookkeeping. Most of it targets Linux, because it uses named pipes and
`AF_VSOCK` sockets.

## Modules

- `fcmicro.common`: shared constants such as the stdio vsock ports
  `STDIN_PORT`, `STDOUT_PORT` and `STDERR_PORT`, and well-known file names. It
  also holds the stub drive format.
  - `generate_stub_content(drive_id)` returns `MAGIC_STUB_BYTES` followed by a
    one-byte length and the id. It raises `ValueError` if the id is longer than
    255 bytes.
  - `is_stub_drive(reader)` reports whether a binary stream starts with the
    magic bytes.
  - `parse_stub_content(reader)` reads the drive id back. It raises `EOFError`
    on truncated content.
- `fcmicro.drive_handler`: creates stub drive files, padded to 512-byte
  sectors, and patches them later with real images.
  - `create_container_stubs(machine_drives, jail, container_count)` returns a
    `StubDriveHandler` with `reserve(...)` and `release(...)`.
  - `create_drive_mount_stubs(machine_drives, jail, drive_mounts)` returns a
    list of `StubDrive` objects, each with `patch_and_mount(machine,
    drive_mounter)`.
  - Each created drive is appended to `machine_drives` as a `DriveConfig`.
  - The `jail` object must provide `jail_path()` (an object with `root_path`),
    `stub_drives_options()` and `expose_file_to_jail(path)`.
  - The `machine` object must provide `update_guest_drive(drive_id,
    path_on_host)`.
  - The `drive_mounter` object must provide `mount_drive(drive_id=...,
    destination_path=..., filesystem_type=..., options=...)` and
    `unmount_drive(drive_id=...)`.
  - Drive ids come from `stub_path_to_drive_id`, which is unpadded base32 of
    the file name.
- `fcmicro.bundle`: `BundleDir` paths for the address file, log FIFO, rootfs
  and `config.json`, and `vm_bundle_dir(task_id)` for bundles under
  `/container` inside the VM. `OCIConfig` reads and writes `config.json`, and
  `vm_id()` returns its VM id annotation. Failures raise `OCIConfigError`.
- `fcmicro.oci`: `with_vmid(vm_id)` returns a function that sets the
  `aws.firecracker.vm.id` annotation on an OCI spec dict.
- `fcmicro.vm.dir`:
  - `shim_dir(base, namespace, vm_id)` validates both identifiers and resolves
    symlinks in `base`, which must exist. It returns a `VMDir`.
  - `VMDir` knows the paths of the VMM socket, the vsock socket, the FIFOs and
    the address file. It also creates bundle, address and log symlinks and
    writes the address file atomically.
  - `validate_identifier` raises `InvalidIdentifierError` for an invalid
    identifier.
- `fcmicro.vm.fifo`, `fcmicro.vm.vsock`: IO connectors. Each one is a callable
  that takes `(cancel_event, logger)` and returns a `concurrent.futures.Future`
  that resolves to a binary stream.
  - `read_fifo_connector` and `write_fifo_connector` create the FIFO if it is
    missing.
  - `vsock_dial_connector` dials a guest port through the host-side unix
    socket. It sends `CONNECT <port>` and expects `OK ` in reply.
  - `vsock_accept_connector` listens on a guest vsock port.
  - `vsock_dial` and `VSockListener` retry temporary failures.
- `fcmicro.vm.ioproxy`:
  - `IOConnectorPair.proxy` connects both sides of a pair and copies from the
    reader to the writer.
  - `IOConnectorProxy` runs up to three pairs, one each for stdin, stdout and
    stderr.
  - `input_pair` and `output_pair` build vsock and FIFO pairs.
- `fcmicro.vm.agent`:
  - `is_agent_only_io(stdout)` is true for `binary://` and `file://` targets.
  - `NullIOProxy` is a proxy that does nothing.
- `fcmicro.vm.task`: `TaskManager` works through a task service object that has
  `create`, `exec`, `delete` and `wait` methods.
  - `create_task`, `exec_process` and `delete_process` pass their requests to
    that service. `delete_process` waits for IO to flush before it returns.
  - `shutdown_if_empty` makes the manager refuse new processes once none
    remain.
  - `attach_io` and `is_proxy_open` act on the IO proxy of a managed process.
  - Errors raise `TaskError` or `ProcessExistsError`.
- `fcmicro.debug`: `Helper(*levels)` parses log level strings such as `debug`,
  `firecracker:info`, `firecracker-go-sdk:warning` or
  `firecracker-containerd:error`.
  - `firecracker_log_level()` and `log_firecracker_output()` give the settings
    for the VMM.
  - `firecracker_sdk_log_level()` and `firecracker_containerd_log_level()`
    return a `(LogLevel, bool)` pair.
  - Unknown or conflicting levels raise a `LogLevelError` subclass.
- `fcmicro.cpuset`: an immutable `Builder` for `cpuset.cpus` and `cpuset.mems`
  strings. It produces a `CPUSet`.
- `fcmicro.fsutil`:
  - `parse_proc_mount_lines(*lines)` returns `MountInfo` records.
  - `create_fs_img("ext3" | "ext4", *files)` builds an image from `FSImgFile`
    entries by running `mkfs.<type>`.
- `fcmicro.procwait`:
  - `wait_for_process_to_exist(matcher, interval, cancel)` and
    `wait_for_pid_to_exit(pid, interval, cancel)` poll with psutil. They raise
    `CancelledError` when the `threading.Event` is set.
  - `average_cpu_deltas(interval, cancel)` returns the average `CPUTimes`
    consumed per interval.

## What it does not do

This is a library only. It has no command-line entry point, no shim or agent
server, and no API server. It does not launch or configure virtual machines. It
does not set up container networking. The task service, the VM machine, the
jail and the drive mounter are supplied by the caller.

## Installation

```
pip install .
```

## Examples

Stub drive contents:

```python
import io
from fcmicro.common import generate_stub_content, is_stub_drive, parse_stub_content

content = generate_stub_content("drive0")
assert is_stub_drive(io.BytesIO(content))
assert parse_stub_content(io.BytesIO(content)) == "drive0"
```

Building a cpuset:

```python
from fcmicro.cpuset import Builder

cset = Builder().add_cpu(0).add_cpu_range(2, 3).add_mem(0).build()
print(cset.cpus, cset.mems)   # 0,2-3 0
```

Parsing log levels:

```python
from fcmicro.debug import Helper

helper = Helper("debug", "firecracker-go-sdk:warning")
print(helper.firecracker_log_level())        # Debug
print(helper.firecracker_sdk_log_level())    # (<LogLevel.WARNING: 3>, True)
```

VM directory layout:

```python
import tempfile
from fcmicro.vm.dir import shim_dir

base = tempfile.mkdtemp()
vm_dir = shim_dir(base, "default", "vm-1")
print(vm_dir.firecracker_sock_path())
```

## Running the tests

```
pip install .[test]
pytest
```