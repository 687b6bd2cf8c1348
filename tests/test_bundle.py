import json
import os

import pytest

from fcmicro.bundle import (
    VM_BUNDLE_ROOT,
    BundleDir,
    OCIConfig,
    OCIConfigError,
    vm_bundle_dir,
)
from fcmicro.common import (
    BUNDLE_ROOTFS_NAME,
    OCI_CONFIG_NAME,
    SHIM_ADDR_FILE_NAME,
    SHIM_LOG_FIFO_NAME,
)
from fcmicro.oci import VMID_ANNOTATION_KEY


def test_vm_bundle_dir():
    d = vm_bundle_dir("task1")
    assert d.root_path == "/container/task1"
    assert os.path.dirname(d.root_path) == VM_BUNDLE_ROOT


def test_bundle_dir_paths():
    d = BundleDir("/run/bundle")
    for path, name in [
        (d.addr_file_path(), SHIM_ADDR_FILE_NAME),
        (d.log_fifo_path(), SHIM_LOG_FIFO_NAME),
        (d.rootfs_path(), BUNDLE_ROOTFS_NAME),
        (d.oci_config_path(), OCI_CONFIG_NAME),
    ]:
        assert os.path.dirname(path) == "/run/bundle"
        assert os.path.basename(path) == name
    assert d.oci_config().path == d.oci_config_path()
    assert os.fspath(d) == "/run/bundle"


def test_oci_config_write_read_round_trip(tmp_path):
    config = BundleDir(str(tmp_path)).oci_config()
    config.write(b'{"a": 1}')
    assert config.read_bytes() == b'{"a": 1}'
    with config.open() as f:
        assert f.read() == b'{"a": 1}'


def test_oci_config_vm_id(tmp_path):
    config = BundleDir(str(tmp_path)).oci_config()
    config.write(json.dumps({"annotations": {VMID_ANNOTATION_KEY: "vm-7"}}).encode())
    assert config.vm_id() == "vm-7"


@pytest.mark.parametrize(
    "doc",
    [{}, {"annotations": None}, {"annotations": {"other": "x"}}],
)
def test_oci_config_vm_id_absent(tmp_path, doc):
    config = BundleDir(str(tmp_path)).oci_config()
    config.write(json.dumps(doc).encode())
    assert config.vm_id() == ""


@pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b'{"annotations": {"k": 1}}'])
def test_oci_config_vm_id_invalid(tmp_path, raw):
    config = BundleDir(str(tmp_path)).oci_config()
    config.write(raw)
    with pytest.raises(OCIConfigError):
        config.vm_id()


def test_oci_config_missing_file(tmp_path):
    config = OCIConfig(str(tmp_path / "missing.json"))
    with pytest.raises(OCIConfigError):
        config.read_bytes()
    with pytest.raises(OCIConfigError):
        config.open()
    with pytest.raises(OCIConfigError):
        config.vm_id()


def test_oci_config_write_to_missing_dir_raises(tmp_path):
    config = OCIConfig(str(tmp_path / "nodir" / "config.json"))
    with pytest.raises(OCIConfigError):
        config.write(b"{}")