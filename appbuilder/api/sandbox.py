import logging
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from appbuilder.apply.preview import probe_url
from appbuilder.errors import ProvisionError
from appbuilder.services import Services, get_services


logger = logging.getLogger("appbuilder.api.sandbox")


router = APIRouter(prefix="/api/sandbox", tags=["sandbox"])


@router.post("")
async def create_sandbox(services: Services = Depends(get_services)) -> Any:
    """Provision a fresh sandbox, replacing the current one."""
    try:
        handle = await services.manager.provision()
    except ProvisionError as e:
        logger.error("create_sandbox failed after %d attempts", e.attempts)
        return JSONResponse(
            status_code=503,
            content={
                "ok": False,
                "error": e.user_message(),
                "attempts": e.attempts,
                "suggestions": e.suggestions,
            },
        )
    return {
        "ok": True,
        "sandbox": handle.model_dump(),
        "files": services.manager.scaffold_files,
    }


@router.get("")
async def sandbox_status(services: Services = Depends(get_services)) -> dict[str, Any]:
    manager = services.manager
    handle = manager.handle
    return {
        "active": manager.active,
        "sandbox": handle.model_dump() if handle is not None else None,
        "applied_files": sorted(manager.existing_files),
        "preview_events": list(services.preview_events),
    }


@router.delete("")
async def kill_sandbox(services: Services = Depends(get_services)) -> dict[str, Any]:
    killed = await services.manager.kill()
    return {"ok": True, "killed": killed}


@router.get("/files")
async def sandbox_files(services: Services = Depends(get_services)) -> dict[str, Any]:
    if not services.manager.active:
        return {"ok": False, "error": "no active sandbox", "files": []}
    files = await services.manager.list_files()
    return {"ok": True, "files": files, "count": len(files)}


@router.post("/check-preview")
async def check_preview(services: Services = Depends(get_services)) -> dict[str, Any]:
    """Make sure the dev server is up, then probe the public preview URL."""
    manager = services.manager
    if manager.handle is None:
        return {"ok": False, "running": False, "error": "no active sandbox"}
    running = await manager.ensure_preview_server()
    url = manager.handle.base_url
    status = await probe_url(url)
    return {"ok": status is not None, "running": running, "status": status, "url": url}
