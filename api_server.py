"""HTTP surface for the QEMU VM manager.

``create_app(config)`` wires the managers together and registers the routes.
Each route is a thin wrapper around a ``*_core`` function that does the work
and can be called directly from tests. Domain errors are translated to
HTTPException at that boundary; anything unexpected is logged with its
traceback and reported as a generic 500.
"""
import platform
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from fastapi import Body, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from omegaconf import DictConfig
from pydantic import BaseModel, ConfigDict, Field

import qemu_img
from config.schema import ensure_directories
from disk_manager import DiskManager
from errors import NotFoundError, QemuManagerError
from iso_repository import IsoRepository
from snapshot_manager import SnapshotManager
from state_store import StateStore
from vm_manager import VMManager

INTERNAL_ERROR = {"kind": "internal", "message": "internal server error"}


class CreateVMRequest(BaseModel):
    # Every field is optional here so that missing ones are reported by the
    # schema validator with a field-specific message.
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    cpus: Optional[int] = None
    memory: Optional[Union[int, float, str]] = None
    os: Optional[str] = None
    disk_name: Optional[str] = Field(default=None, alias="diskName")
    iso: Optional[str] = None
    network_type: Optional[str] = Field(default=None, alias="networkType")
    network_bridge: Optional[str] = Field(default=None, alias="networkBridge")
    enable_kvm: Optional[bool] = Field(default=None, alias="enableKVM")
    enable_efi: Optional[bool] = Field(default=None, alias="enableEFI")
    custom_args: Optional[Union[str, List[str]]] = Field(default=None, alias="customArgs")


class CreateDiskRequest(BaseModel):
    name: Optional[str] = None
    size: Optional[int] = None
    format: Optional[str] = None
    type: Optional[str] = None


class UpdateDiskRequest(BaseModel):
    name: Optional[str] = None
    size: Optional[int] = None


class IsoBase64Request(BaseModel):
    name: Optional[str] = None
    content: Optional[str] = None


class Services:
    """The managers behind the routes, built from one configuration."""

    def __init__(self, config: DictConfig):
        self.config = config
        self.directories = ensure_directories(config.paths)
        self.store = StateStore(self.directories["vms"])
        self.disks = DiskManager(self.directories["disks"], img_binary=config.qemu.img_binary)
        self.isos = IsoRepository(self.directories["isos"])
        self.snapshots = SnapshotManager(self.store, self.directories["disks"], self.directories["snapshots"],
                                         img_binary=config.qemu.img_binary)
        self.vms = VMManager(config, self.store, self.disks, self.isos)


def _call(fn, *args, **kwargs):
    """Run a manager call, mapping domain errors to HTTPException."""
    try:
        return fn(*args, **kwargs)
    except HTTPException:
        raise
    except QemuManagerError as e:
        logger.warning("Request failed", kind=e.kind, error=e.message)
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception:
        logger.exception("Unhandled error while serving request")
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR)


# ------------------------------------------------------------------- VMs

def create_vm_core(services: Services, req: CreateVMRequest) -> Dict[str, Any]:
    vm = _call(services.vms.create_vm, req.model_dump(by_alias=True, exclude_none=True))
    return {"message": f'VM "{vm["name"]}" started successfully', "vm": vm}


def list_vms_core(services: Services) -> List[Dict[str, Any]]:
    return _call(services.vms.list_vms)


def get_vm_core(services: Services, vm_id: str) -> Dict[str, Any]:
    return _call(services.vms.get_vm, vm_id)


def update_vm_core(services: Services, vm_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    return _call(services.vms.update_vm, vm_id, fields)


def delete_vm_core(services: Services, vm_id: str, remove_disks: bool = False) -> Dict[str, Any]:
    return _call(services.vms.delete_vm, vm_id, remove_disks=remove_disks)


def vm_action_core(services: Services, vm_id: str, action: str) -> Dict[str, Any]:
    actions = {
        "start": services.vms.start_vm,
        "stop": services.vms.stop_vm,
        "pause": services.vms.pause_vm,
        "resume": services.vms.resume_vm,
        "restart": services.vms.restart_vm,
    }
    if action not in actions:
        raise HTTPException(status_code=404, detail=NotFoundError(f"Unknown VM action: {action}").to_dict())
    return _call(actions[action], vm_id)


def snapshot_core(services: Services, vm_id: str) -> Dict[str, Any]:
    return _call(services.snapshots.create_snapshot, vm_id)


def vm_logs_core(services: Services, vm_id: str) -> Dict[str, Any]:
    return _call(services.vms.vm_logs, vm_id)


def vm_metrics_core(services: Services, vm_id: str) -> Dict[str, Any]:
    return _call(services.vms.vm_metrics, vm_id)


# ------------------------------------------------------------------ ISOs

def list_isos_core(services: Services) -> List[Dict[str, Any]]:
    return [iso.model_dump(by_alias=True) for iso in _call(services.isos.list_isos)]


def upload_iso_core(services: Services, upload: UploadFile) -> Dict[str, Any]:
    iso = _call(services.isos.save_iso_stream, Path(upload.filename or "").name, upload.file)
    return {"message": f"ISO {iso.name} uploaded.", "iso": iso.model_dump(by_alias=True)}


def upload_iso_base64_core(services: Services, req: IsoBase64Request) -> Dict[str, Any]:
    iso = _call(services.isos.save_iso_base64, req.name, req.content)
    return {"message": f"ISO {iso.name} uploaded.", "iso": iso.model_dump(by_alias=True)}


def delete_iso_core(services: Services, filename: str) -> Dict[str, Any]:
    _call(services.isos.delete_iso, filename)
    return {"message": f"ISO file {filename} deleted successfully"}


# ----------------------------------------------------------------- disks

def create_disk_core(services: Services, req: CreateDiskRequest) -> Dict[str, Any]:
    return _call(services.disks.create_disk, req.name, req.size, req.format, req.type)


def list_disks_core(services: Services) -> List[Dict[str, Any]]:
    return [disk.model_dump() for disk in _call(services.disks.list_disks)]


def update_disk_core(services: Services, filename: str, req: UpdateDiskRequest) -> Dict[str, Any]:
    return _call(services.disks.update_disk, filename, name=req.name, size=req.size)


def delete_disk_core(services: Services, filename: str) -> Dict[str, Any]:
    return _call(services.disks.delete_disk, filename)


# ---------------------------------------------------------------- status

def status_core(services: Services) -> Dict[str, Any]:
    version = qemu_img.version(services.config.qemu.img_binary)
    return {
        "status": "operational",
        "server": {
            "platform": platform.system().lower(),
            "arch": platform.machine(),
            "pythonVersion": platform.python_version(),
        },
        "qemu": {"installed": version is not None, "version": version},
        "directories": [
            {"name": name, "path": str(path), "exists": path.is_dir()}
            for name, path in services.directories.items()
        ],
    }


def create_app(config: DictConfig) -> FastAPI:
    """Build the FastAPI application for ``config``.

    The managers are reachable as ``app.state.services``.
    """
    services = Services(config)
    app = FastAPI(title="QEMU VM Manager")
    app.state.services = services

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        # Malformed bodies are reported like any other invalid argument
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{where}: {first.get('msg', 'invalid request')}" if where else first.get("msg", "invalid request")
        return JSONResponse(status_code=400, content={"detail": {"kind": "invalid_argument", "message": message}})

    @app.get("/status")
    def _status():
        return status_core(services)

    @app.post("/vms")
    def _create_vm(req: CreateVMRequest):
        return create_vm_core(services, req)

    @app.get("/vms")
    def _list_vms():
        return list_vms_core(services)

    @app.get("/vms/{vm_id}")
    def _get_vm(vm_id: str):
        return get_vm_core(services, vm_id)

    @app.put("/vms/{vm_id}")
    def _update_vm(vm_id: str, fields: Dict[str, Any] = Body(...)):
        return update_vm_core(services, vm_id, fields)

    @app.delete("/vms/{vm_id}")
    def _delete_vm(vm_id: str, removeDisks: bool = False):
        return delete_vm_core(services, vm_id, remove_disks=removeDisks)

    @app.post("/vms/{vm_id}/snapshot")
    def _snapshot(vm_id: str):
        return snapshot_core(services, vm_id)

    @app.get("/vms/{vm_id}/logs")
    def _vm_logs(vm_id: str):
        return vm_logs_core(services, vm_id)

    @app.get("/vms/{vm_id}/metrics")
    def _vm_metrics(vm_id: str):
        return vm_metrics_core(services, vm_id)

    @app.post("/vms/{vm_id}/{action}")
    def _vm_action(vm_id: str, action: str):
        return vm_action_core(services, vm_id, action)

    @app.get("/isos")
    def _list_isos():
        return list_isos_core(services)

    @app.post("/isos")
    def _upload_iso(iso: UploadFile = File(...)):
        return upload_iso_core(services, iso)

    @app.post("/isos-base64")
    def _upload_iso_base64(req: IsoBase64Request):
        return upload_iso_base64_core(services, req)

    @app.delete("/isos/{filename}")
    def _delete_iso(filename: str):
        return delete_iso_core(services, filename)

    @app.post("/disks")
    def _create_disk(req: CreateDiskRequest):
        return create_disk_core(services, req)

    @app.get("/disks")
    def _list_disks():
        return list_disks_core(services)

    @app.put("/disks/{filename}")
    def _update_disk(filename: str, req: UpdateDiskRequest):
        return update_disk_core(services, filename, req)

    @app.delete("/disks/{filename}")
    def _delete_disk(filename: str):
        return delete_disk_core(services, filename)

    logger.info("API application created", vms=str(services.directories["vms"]))
    return app
