import base64
import os

import pytest

import api_server

pytestmark = pytest.mark.skipif(os.name == "nt", reason="spawns a POSIX shell script as the hypervisor")


def test_vm_disk_end_to_end(client):
    resp = client.post("/disks", json={"name": "test", "size": 10, "format": "qcow2", "type": "dynamic"})
    assert resp.status_code == 200
    assert resp.json()["filename"] == "test.qcow2"

    resp = client.post("/vms", json={"name": "vm1", "cpus": 1, "memory": 1, "diskName": "test"})
    assert resp.status_code == 200
    vm = resp.json()["vm"]
    assert vm["diskFormat"] == "qcow2"

    listed = client.get("/vms").json()
    assert [(v["name"], v["status"]) for v in listed] == [("vm1", "running")]

    resp = client.post(f"/vms/{vm['id']}/stop")
    assert resp.status_code == 200
    assert client.get("/vms").json()[0]["status"] == "stopped"

    resp = client.delete(f"/vms/{vm['id']}", params={"removeDisks": "true"})
    assert resp.status_code == 200
    assert resp.json()["removedDisk"] == "test.qcow2"

    assert client.get("/vms").json() == []
    assert client.get("/disks").json() == []


def test_iso_end_to_end(client):
    resp = client.post("/isos", files={"iso": ("x.iso", b"\0" * 4096, "application/octet-stream")})
    assert resp.status_code == 200

    isos = client.get("/isos").json()
    assert [i["name"] for i in isos] == ["x.iso"]
    assert isos[0]["size"].endswith(" MB")
    assert "lastModified" in isos[0]

    assert client.delete("/isos/x.iso").status_code == 200
    assert client.get("/isos").json() == []

    resp = client.delete("/isos/x.iso")
    assert resp.status_code == 404
    assert resp.json()["detail"]["kind"] == "not_found"


def test_iso_base64_upload(client):
    content = base64.b64encode(b"iso").decode()
    resp = client.post("/isos-base64", json={"name": "b.iso", "content": content})
    assert resp.status_code == 200
    assert resp.json()["iso"]["name"] == "b.iso"

    resp = client.post("/isos-base64", json={"name": "b.iso", "content": "%%%"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["kind"] == "invalid_argument"


def test_missing_upload_field_is_bad_request(client):
    resp = client.post("/isos", files={"file": ("x.iso", b"data", "application/octet-stream")})
    assert resp.status_code == 400
    assert resp.json()["detail"]["kind"] == "invalid_argument"


def test_create_vm_validation_errors(client):
    resp = client.post("/vms", json={"name": "vm1", "cpus": 1})
    assert resp.status_code == 400
    assert resp.json()["detail"]["kind"] == "invalid_argument"
    assert "memory" in resp.json()["detail"]["message"]

    resp = client.post("/vms", json={"name": "vm1", "cpus": "many", "memory": 1, "diskName": "d"})
    assert resp.status_code == 400

    resp = client.post("/vms", json={"name": "vm1", "cpus": 1, "memory": 1, "diskName": "missing"})
    assert resp.status_code == 404


def test_vm_not_found_routes(client):
    assert client.get("/vms/123").status_code == 404
    assert client.post("/vms/123/stop").status_code == 404
    assert client.post("/vms/123/snapshot").status_code == 404
    assert client.delete("/vms/123").status_code == 404
    assert client.put("/vms/123", json={"cpus": 2}).status_code == 404


def test_delete_twice_and_stop_twice(client):
    client.post("/disks", json={"name": "test", "size": 1, "format": "raw"})
    vm = client.post("/vms", json={"name": "vm1", "cpus": 1, "memory": "1 GB", "diskName": "test"}).json()["vm"]
    assert vm["diskFile"] == "test.raw"

    assert "note" not in client.post(f"/vms/{vm['id']}/stop").json()
    second = client.post(f"/vms/{vm['id']}/stop")
    assert second.status_code == 200
    assert second.json()["note"] == "process already stopped"

    assert client.delete(f"/vms/{vm['id']}").status_code == 200
    resp = client.delete(f"/vms/{vm['id']}")
    assert resp.status_code == 404
    assert resp.json()["detail"] == {"kind": "not_found", "message": f"VM {vm['id']} not found"}


def test_lifecycle_actions_and_update(client):
    client.post("/disks", json={"name": "test", "size": 2, "format": "qcow2"})
    vm = client.post("/vms", json={"name": "vm1", "cpus": 1, "memory": 1, "diskName": "test"}).json()["vm"]
    vm_id = vm["id"]

    assert client.post(f"/vms/{vm_id}/pause").json()["vm"]["status"] == "paused"
    assert client.post(f"/vms/{vm_id}/resume").json()["vm"]["status"] == "running"
    assert client.post(f"/vms/{vm_id}/start").json()["note"] == "already running"
    restarted = client.post(f"/vms/{vm_id}/restart").json()["vm"]
    assert restarted["status"] == "running"

    resp = client.put(f"/vms/{vm_id}", json={"cpus": 2, "os": "Alpine"})
    assert resp.status_code == 200
    assert resp.json()["vm"]["cpus"] == 2

    resp = client.put(f"/vms/{vm_id}", json={"status": "running"})
    assert resp.status_code == 400

    assert client.post(f"/vms/{vm_id}/teleport").status_code == 404

    snapshot = client.post(f"/vms/{vm_id}/snapshot")
    assert snapshot.status_code == 200
    assert snapshot.json()["snapshot"].startswith("test-")

    assert set(client.get(f"/vms/{vm_id}/logs").json()) >= {"stdout", "stderr"}
    assert client.get(f"/vms/{vm_id}/metrics").status_code == 200

    client.post(f"/vms/{vm_id}/stop")
    assert client.get(f"/vms/{vm_id}/metrics").status_code == 400


def test_disk_routes(client):
    resp = client.post("/disks", json={"name": "test", "size": 10, "format": "raw", "type": "dynamic"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["kind"] == "invalid_argument"

    client.post("/disks", json={"name": "a", "size": 10, "format": "qcow2"})
    client.post("/disks", json={"name": "b", "size": 10, "format": "qcow2"})
    assert client.post("/disks", json={"name": "a", "size": 10, "format": "qcow2"}).status_code == 409

    assert client.put("/disks/a.qcow2", json={"name": "b"}).status_code == 409
    assert client.put("/disks/a.qcow2", json={"size": 5}).status_code == 400
    assert client.put("/disks/a.qcow2", json={}).status_code == 400

    resp = client.put("/disks/a.qcow2", json={"name": "c", "size": 20})
    assert resp.status_code == 200
    disks = {d["filename"]: d for d in client.get("/disks").json()}
    assert set(disks) == {"b.qcow2", "c.qcow2"}
    assert disks["c.qcow2"]["size"] == 20

    assert client.delete("/disks/b.qcow2").status_code == 200
    assert client.delete("/disks/b.qcow2").status_code == 404


def test_external_tool_failure_maps_to_502(client, fake_qemu_img):
    fake_qemu_img.fail_with = "qemu-img: permission denied"
    resp = client.post("/disks", json={"name": "test", "size": 1, "format": "qcow2"})
    assert resp.status_code == 502
    assert resp.json()["detail"] == {"kind": "external_tool_failure", "message": "qemu-img: permission denied"}


def test_unexpected_error_is_internal_500(client, monkeypatch):
    def boom():
        raise RuntimeError("secret detail")

    monkeypatch.setattr(client.app.state.services.disks, "list_disks", boom)
    resp = client.get("/disks")
    assert resp.status_code == 500
    assert resp.json()["detail"] == api_server.INTERNAL_ERROR


def test_status(client):
    body = client.get("/status").json()
    assert body["status"] == "operational"
    assert body["qemu"] == {"installed": True, "version": "qemu-img version 8.2.2"}
    assert {d["name"] for d in body["directories"]} == {"vms", "disks", "isos", "snapshots", "logs"}
    assert all(d["exists"] for d in body["directories"])
