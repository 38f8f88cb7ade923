import threading

import pytest

from disk_manager import DiskManager, infer_allocation_type
from errors import ConflictError, ExternalToolError, InvalidArgumentError, NotFoundError
from models import ImageInfo

GiB = 1024 ** 3

VALID_PAIRS = [
    ("qcow2", "dynamic"),
    ("qcow2", "fixed"),
    ("vmdk", "dynamic"),
    ("vmdk", "fixed"),
    ("raw", "fixed"),
    ("vdi", "dynamic"),
    ("vpc", "dynamic"),
]

INVALID_PAIRS = [
    ("raw", "dynamic"),
    ("vdi", "fixed"),
    ("vpc", "fixed"),
]


@pytest.fixture
def disks(tmp_path, fake_qemu_img):
    return DiskManager(tmp_path / "disks", platform="linux")


@pytest.mark.parametrize("fmt,disk_type", VALID_PAIRS)
def test_created_disk_reports_requested_format_and_type(disks, fmt, disk_type):
    disks.create_disk("test", 10, fmt, disk_type)

    listed = disks.list_disks()
    assert [(d.name, d.filename, d.format, d.type, d.size) for d in listed] == [
        ("test", f"test.{fmt}", fmt, disk_type, 10)
    ]


@pytest.mark.parametrize("fmt,disk_type", INVALID_PAIRS)
def test_disallowed_pair_is_rejected_before_any_file_exists(disks, fake_qemu_img, fmt, disk_type):
    with pytest.raises(InvalidArgumentError):
        disks.create_disk("test", 10, fmt, disk_type)
    assert list(disks.directory.iterdir()) == []
    assert fake_qemu_img.calls == []


def test_unknown_format_and_type_rejected(disks):
    with pytest.raises(InvalidArgumentError):
        disks.create_disk("test", 10, "qed", "dynamic")
    with pytest.raises(InvalidArgumentError):
        disks.create_disk("test", 10, "qcow2", "sparse")


def test_format_is_case_insensitive(disks):
    result = disks.create_disk("test", 1, "QCOW2", "Dynamic")
    assert result["filename"] == "test.qcow2"
    assert result["type"] == "dynamic"


def test_omitted_type_defaults_to_what_the_format_supports(disks):
    assert disks.create_disk("a", 1, "qcow2")["type"] == "dynamic"
    assert disks.create_disk("b", 1, "raw")["type"] == "fixed"


@pytest.mark.parametrize("size", [0, -1])
def test_size_must_be_positive(disks, size):
    with pytest.raises(InvalidArgumentError):
        disks.create_disk("test", size, "qcow2", "dynamic")


def test_creation_options(fake_qemu_img, tmp_path):
    posix = DiskManager(tmp_path / "p", platform="linux")
    assert posix.creation_options("qcow2", "fixed") == ["preallocation=full"]
    assert posix.creation_options("qcow2", "dynamic") == ["preallocation=metadata"]
    assert posix.creation_options("vmdk", "fixed") == ["subformat=monolithicFlat"]
    assert posix.creation_options("vmdk", "dynamic") == ["subformat=streamOptimized"]
    assert posix.creation_options("raw", "fixed") == []
    assert posix.creation_options("vdi", "dynamic") == []

    windows = DiskManager(tmp_path / "w", platform="win32")
    assert windows.creation_options("qcow2", "fixed") == ["preallocation=metadata"]


def test_create_existing_disk_conflicts(disks, fake_qemu_img):
    disks.create_disk("test", 10, "qcow2", "dynamic")
    calls = len(fake_qemu_img.calls)
    with pytest.raises(ConflictError):
        disks.create_disk("test", 20, "qcow2", "dynamic")
    assert len(fake_qemu_img.calls) == calls


def test_create_surfaces_tool_stderr(disks, fake_qemu_img):
    fake_qemu_img.fail_with = "qemu-img: test.qcow2: Disk quota exceeded"
    with pytest.raises(ExternalToolError) as exc:
        disks.create_disk("test", 10, "qcow2", "dynamic")
    assert "Disk quota exceeded" in exc.value.message


def test_list_skips_unreadable_and_hidden_files(disks):
    disks.create_disk("good", 3, "qcow2", "dynamic")
    (disks.directory / "junk.img").write_text("not an image")
    (disks.directory / ".good.qcow2.tmp").write_text("partial")

    assert [d.filename for d in disks.list_disks()] == ["good.qcow2"]


def test_delete_disk(disks):
    disks.create_disk("test", 1, "qcow2", "dynamic")
    disks.delete_disk("test.qcow2")
    assert disks.list_disks() == []
    with pytest.raises(NotFoundError):
        disks.delete_disk("test.qcow2")


def test_paths_outside_directory_rejected(disks):
    with pytest.raises(InvalidArgumentError):
        disks.delete_disk("../etc/passwd")


def test_resize_grows_disk(disks):
    disks.create_disk("test", 10, "qcow2", "dynamic")
    result = disks.update_disk("test.qcow2", size=20)
    assert result["size"] == 20
    assert disks.disk_info("test.qcow2").size >= 20


@pytest.mark.parametrize("size", [10, 5])
def test_resize_to_same_or_smaller_rejected(disks, size):
    disks.create_disk("test", 10, "qcow2", "dynamic")
    with pytest.raises(InvalidArgumentError):
        disks.update_disk("test.qcow2", size=size)
    assert disks.disk_info("test.qcow2").size == 10


def test_resize_unsupported_format(disks):
    disks.create_disk("test", 10, "vdi", "dynamic")
    with pytest.raises(InvalidArgumentError):
        disks.update_disk("test.vdi", size=20)


def test_update_requires_name_or_size(disks):
    disks.create_disk("test", 10, "qcow2", "dynamic")
    with pytest.raises(InvalidArgumentError):
        disks.update_disk("test.qcow2")


def test_update_missing_disk(disks):
    with pytest.raises(NotFoundError):
        disks.update_disk("nope.qcow2", name="other")


def test_rename_keeps_extension(disks):
    disks.create_disk("test", 10, "qcow2", "dynamic")
    result = disks.update_disk("test.qcow2", name="renamed")
    assert result["filename"] == "renamed.qcow2"
    assert [d.filename for d in disks.list_disks()] == ["renamed.qcow2"]


def test_rename_collision_leaves_both_files_untouched(disks):
    disks.create_disk("a", 10, "qcow2", "dynamic")
    disks.create_disk("b", 20, "qcow2", "dynamic")
    before = {p.name: p.read_bytes() for p in disks.directory.iterdir()}

    with pytest.raises(ConflictError):
        disks.update_disk("a.qcow2", name="b", size=30)

    after = {p.name: p.read_bytes() for p in disks.directory.iterdir()}
    assert after == before


def test_rejected_resize_does_not_rename(disks):
    disks.create_disk("a", 10, "qcow2", "dynamic")
    with pytest.raises(InvalidArgumentError):
        disks.update_disk("a.qcow2", name="b", size=5)
    assert [d.filename for d in disks.list_disks()] == ["a.qcow2"]


def test_rename_and_resize_together(disks):
    disks.create_disk("a", 10, "raw", "fixed")
    result = disks.update_disk("a.raw", name="b", size=12)
    assert result["filename"] == "b.raw"
    info = disks.disk_info("b.raw")
    assert info.size == 12
    assert info.type == "fixed"


def test_resolve_vm_disk_priority(disks):
    for fmt in ("vmdk", "raw", "qcow2"):
        disks.create_disk("test", 1, fmt, "fixed" if fmt == "raw" else "dynamic")

    resolved = disks.resolve_vm_disk("test")
    assert resolved.filename == "test.qcow2"
    assert resolved.format == "qcow2"

    disks.delete_disk("test.qcow2")
    (disks.directory / "test.img").write_bytes(b"")
    resolved = disks.resolve_vm_disk("test")
    assert resolved.filename == "test.img"
    assert resolved.format == "raw"
    assert resolved.name == "test"


def test_resolve_vm_disk_accepts_full_filename(disks):
    disks.create_disk("test", 1, "vmdk", "dynamic")
    resolved = disks.resolve_vm_disk("test.vmdk")
    assert resolved.filename == "test.vmdk"
    assert resolved.name == "test"


def test_resolve_vm_disk_missing(disks):
    with pytest.raises(NotFoundError):
        disks.resolve_vm_disk("missing")


def test_infer_type_from_preallocation_line():
    full = ImageInfo(virtual_size=GiB, format="qcow2", preallocation="full")
    metadata = ImageInfo(virtual_size=GiB, format="qcow2", preallocation="metadata", disk_size=2 * GiB)
    assert infer_allocation_type(full) == "fixed"
    assert infer_allocation_type(metadata) == "dynamic"
    assert infer_allocation_type(ImageInfo(virtual_size=GiB, format="vmdk", subformat="streamOptimized")) == "dynamic"


def test_failed_resize_keeps_original_name(disks, fake_qemu_img):
    disks.create_disk("a", 1, "qcow2", "dynamic")
    fake_qemu_img.fail_with = "qemu-img: Could not resize image"
    fake_qemu_img.fail_on = "resize"

    with pytest.raises(ExternalToolError):
        disks.update_disk("a.qcow2", name="b", size=5)

    assert sorted(p.name for p in disks.directory.iterdir()) == ["a.qcow2"]


def test_opposite_renames_do_not_deadlock(disks):
    disks.create_disk("a", 1, "qcow2", "dynamic")
    renamed = []

    def swap(src, dst):
        for _ in range(50):
            try:
                renamed.append(disks.update_disk(f"{src}.qcow2", name=dst)["filename"])
            except NotFoundError:
                pass

    threads = [threading.Thread(target=swap, args=pair) for pair in (("a", "b"), ("b", "a"))]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert not any(t.is_alive() for t in threads)
    assert renamed
    assert [p.name for p in disks.directory.iterdir()] in (["a.qcow2"], ["b.qcow2"])
    assert len(disks._locks) == 0
