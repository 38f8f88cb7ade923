import json
import os
import re
import stat
import subprocess
from pathlib import Path

import pytest

import qemu_img
from config_manager import default_config

GiB = 1024 ** 3


class FakeQemuImg:
    """Stands in for the qemu-img binary by answering subprocess.run calls.

    Image metadata is stored as JSON inside the image file itself, so renames
    and deletes done by the code under test are seen by later ``info`` calls.
    Files it did not create are reported as unreadable.
    """

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.fail_on = None

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        sub = cmd[1]
        if self.fail_with and self.fail_on in (None, sub):
            return subprocess.CompletedProcess(cmd, 1, "", self.fail_with)
        if sub == "--version":
            return subprocess.CompletedProcess(cmd, 0, "qemu-img version 8.2.2\nCopyright (c) 2003-2023\n", "")
        if sub == "create":
            return self._create(cmd)
        if sub == "info":
            return self._info(cmd)
        if sub == "resize":
            return self._resize(cmd)
        return subprocess.CompletedProcess(cmd, 1, "", f"qemu-img: unknown command {sub}")

    def _parse(self, args):
        flags, positional = {}, []
        i = 0
        while i < len(args):
            if args[i] in ("-f", "-b", "-F", "-o"):
                flags[args[i]] = args[i + 1]
                i += 2
            else:
                positional.append(args[i])
                i += 1
        return flags, positional

    def _create(self, cmd):
        flags, positional = self._parse(cmd[2:])
        path = positional[0]
        if len(positional) > 1:
            size = int(re.match(r"(\d+)G", positional[1]).group(1)) * GiB
        else:
            size = self._load(flags["-b"])["size"]
        options = dict(o.split("=", 1) for o in flags.get("-o", "").split(",") if o)
        self._store(path, {"format": flags["-f"], "size": size, "options": options,
                           "backing": flags.get("-b"), "backing_format": flags.get("-F")})
        return subprocess.CompletedProcess(cmd, 0, f"Formatting '{path}', fmt={flags['-f']}\n", "")

    @staticmethod
    def _store(path, image):
        Path(path).write_text(json.dumps(image))

    @staticmethod
    def _load(path):
        try:
            return json.loads(Path(path).read_text())
        except (OSError, ValueError):
            return None

    def _info(self, cmd):
        path = cmd[-1]
        image = self._load(path)
        if image is None:
            return subprocess.CompletedProcess(cmd, 1, "", f"qemu-img: Could not open '{path}': Image is corrupt")
        size = image["size"]
        fmt = image["format"]
        options = image["options"]
        if options.get("preallocation") == "full" or fmt == "raw":
            disk_size = f"{size // GiB} GiB"
        else:
            disk_size = "196 KiB"
        lines = [
            f"image: {path}",
            f"file format: {fmt}",
            f"virtual size: {size // GiB} GiB ({size} bytes)",
            f"disk size: {disk_size}",
        ]
        if image["backing"]:
            lines.append(f"backing file: {image['backing']}")
            lines.append(f"backing file format: {image['backing_format']}")
        if fmt == "vmdk":
            lines += ["Format specific information:",
                      f"    create type: {options.get('subformat', 'monolithicSparse')}"]
        return subprocess.CompletedProcess(cmd, 0, "\n".join(lines) + "\n", "")

    def _resize(self, cmd):
        flags, positional = self._parse(cmd[2:])
        path, size = positional
        image = self._load(path)
        if image is None:
            return subprocess.CompletedProcess(cmd, 1, "", f"qemu-img: Could not open '{path}'")
        image["size"] = int(size.rstrip("G")) * GiB
        self._store(path, image)
        return subprocess.CompletedProcess(cmd, 0, "Image resized.\n", "")


@pytest.fixture
def fake_qemu_img(monkeypatch):
    fake = FakeQemuImg()
    monkeypatch.setattr(qemu_img.subprocess, "run", fake)
    return fake


@pytest.fixture
def fake_hypervisor(tmp_path):
    if os.name == "nt":
        pytest.skip("hypervisor stand-in is a POSIX shell script")
    script = tmp_path / "fake-qemu-system"
    script.write_text("#!/bin/sh\nexec sleep 60\n")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def config(tmp_path, fake_hypervisor):
    data = tmp_path / "data"
    return default_config({
        "paths": {name: str(data / name) for name in ("vms", "disks", "isos", "snapshots", "logs")},
        "qemu": {"binary": str(fake_hypervisor), "shutdown_timeout": 2, "ovmf_path": "/usr/share/ovmf/OVMF.fd"},
        "logging": {"console": False},
    })


@pytest.fixture
def services(config, fake_qemu_img):
    from api_server import Services

    svc = Services(config)
    yield svc
    for proc in list(svc.vms.processes.values()):
        if proc.poll() is None:
            proc.kill()
            proc.wait()


@pytest.fixture
def client(config, fake_qemu_img):
    from fastapi.testclient import TestClient

    from api_server import create_app

    app = create_app(config)
    with TestClient(app) as c:
        yield c
    for proc in list(app.state.services.vms.processes.values()):
        if proc.poll() is None:
            proc.kill()
            proc.wait()
